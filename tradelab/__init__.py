"""
tradelab - backtest simulation and parameter-search core.
"""

__version__ = "0.1.0"
