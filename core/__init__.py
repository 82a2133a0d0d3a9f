"""
Core primitives: modelli dati, price model, allocator, portfolio,
market data cache e repository.
"""
