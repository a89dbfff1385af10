from .market_data import IndexSnapshot, OptionSnapshot
from .paper_trade import PaperOrder, Portfolio, PortfolioPosition

__all__ = [
    "IndexSnapshot",
    "OptionSnapshot",
    "PaperOrder",
    "Portfolio",
    "PortfolioPosition",
]
