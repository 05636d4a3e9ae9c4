"""
FlashCycle: 核心模块
DEX 环路套利发现与闪电贷执行流水线
"""

from .bot import ArbitrageBot
from .config_loader import ArbitrageSettings, ChainConfig, ConfigLoader
from .network import NetworkManager

__version__ = "0.1.0"

__all__ = [
    "ArbitrageBot",
    "ArbitrageSettings",
    "ChainConfig",
    "ConfigLoader",
    "NetworkManager",
]
