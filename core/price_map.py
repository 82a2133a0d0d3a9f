"""
Price Model - prezzo eseguibile da snapshot bid/mid/ask

Traduce un tag qualitativo di aggressività (likely, mid, unlikely...) in un
prezzo numerico e segnala snapshot anomali confrontandoli con l'ultimo
snapshot conservato (backup a singolo slot).
"""

from __future__ import annotations

import copy
import logging
from typing import Dict, Iterable, Optional, Union

import config
from core.errors import PriceUnavailableError
from core.models import Asset, AssetType, FillProbability, Position, PriceSnapshot, Side

_LOG = logging.getLogger(__name__)


class PriceMap:
    """
    Snapshot correnti per simbolo + backup dello stato precedente

    Il backup è l'unica storia mantenuta: serve solo per detect_anomaly().
    """

    def __init__(self, prices: Dict[str, PriceSnapshot] = None):
        self._prices: Dict[str, PriceSnapshot] = dict(prices or {})
        self._backup: Dict[str, PriceSnapshot] = {}

    def __contains__(self, symbol: str) -> bool:
        return symbol in self._prices

    def symbols(self) -> Iterable[str]:
        return self._prices.keys()

    def get(self, symbol: str) -> Optional[PriceSnapshot]:
        return self._prices.get(symbol)

    def previous(self, symbol: str) -> Optional[PriceSnapshot]:
        return self._backup.get(symbol)

    def set_price(self, symbol: str, snapshot: PriceSnapshot):
        """Aggiorna un singolo simbolo (senza backup)"""
        self._prices[symbol] = snapshot

    def set_prices(self, prices: Dict[str, PriceSnapshot]):
        """Aggiornamento bulk: salva la mappa corrente nel backup e sovrascrive"""
        self._backup = copy.deepcopy(self._prices)
        for symbol, snapshot in prices.items():
            self._prices[symbol] = snapshot
        _LOG.debug(f"💱 Price map updated: {len(prices)} symbols")

    # ------------------------------------------------------------------
    # Resolve
    # ------------------------------------------------------------------

    def resolve_price(
        self,
        asset: Asset,
        side: Side,
        fill_at: FillProbability = FillProbability.MID,
    ) -> float:
        """
        Prezzo eseguibile per asset/lato/aggressività

        Args:
            asset: Asset da prezzare (debit spread = long - short)
            side: BUY o SELL
            fill_at: Aggressività di fill

        Returns:
            Prezzo arrotondato a 2 decimali (opzioni x100)
        """
        side = Side(side)
        fill_at = FillProbability(fill_at)

        if asset.type == AssetType.DEBIT_SPREAD:
            long_price = self.resolve_price(asset.long_leg, side, fill_at)
            short_price = self.resolve_price(asset.short_leg, side, fill_at.flip())
            return round(long_price - short_price, 2)

        snapshot = self._prices.get(asset.symbol)
        if snapshot is None:
            raise PriceUnavailableError(f"No price snapshot for {asset.symbol}")

        price = _price_from_snapshot(snapshot, side, fill_at, asset.symbol)
        return round(price * asset.multiplier, 2)

    def position_price(
        self,
        position: Union[Position, Asset],
        fill_at: FillProbability = FillProbability.MID,
    ) -> float:
        """Valore unitario di una posizione (lato SELL)"""
        asset = position.asset if isinstance(position, Position) else position
        return self.resolve_price(asset, Side.SELL, fill_at)

    # ------------------------------------------------------------------
    # Anomaly detection
    # ------------------------------------------------------------------

    def detect_anomaly(self, symbol: str) -> bool:
        """
        True se lo snapshot corrente è sospetto:
        bid > ask, campi mancanti, nessuno snapshot precedente o variazione
        di bid/mid/ask oltre la soglia rispetto al backup
        """
        current = self._prices.get(symbol)
        previous = self._backup.get(symbol)
        if current is None or not current.is_complete:
            return True
        if current.bid > current.ask:
            return True
        if previous is None or not previous.is_complete:
            return True

        for field_name in ("bid", "mid", "ask"):
            cur = getattr(current, field_name)
            prev = getattr(previous, field_name)
            if cur == 0:
                if prev != 0:
                    return True
                continue
            if abs(cur - prev) / abs(cur) > config.PRICE_ANOMALY_THRESHOLD:
                _LOG.debug(f"⚠️ {symbol} {field_name} moved {prev} -> {cur}")
                return True
        return False


def _price_from_snapshot(
    snapshot: PriceSnapshot,
    side: Side,
    fill_at: FillProbability,
    symbol: str,
) -> float:
    """Tabella aggressività -> lato dello spread"""
    if fill_at == FillProbability.MID:
        value = snapshot.mid
    elif fill_at in (FillProbability.LIKELY, FillProbability.NEAR_LIKELY):
        value = snapshot.ask if side == Side.BUY else snapshot.bid
    else:
        value = snapshot.bid if side == Side.BUY else snapshot.ask

    if value is None:
        raise PriceUnavailableError(f"Incomplete snapshot for {symbol}: {snapshot}")

    if fill_at in (FillProbability.NEAR_LIKELY, FillProbability.NEAR_UNLIKELY):
        if snapshot.mid is None:
            raise PriceUnavailableError(f"Missing mid for {symbol}")
        weight = config.NEAR_FILL_MID_WEIGHT
        value = (value + weight * snapshot.mid) / (weight + 1)

    return value
