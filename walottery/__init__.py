"""Off-chain reconciliation core for the walottery protocol."""

__version__ = "0.3.0"
