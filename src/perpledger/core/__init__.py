"""
Core accounting: margin engine, fee indices, liquidity pool and price oracle.
"""
