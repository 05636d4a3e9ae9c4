"""
FlashCycle: 工具模块
ABI 加载与调用数据编解码
"""

from .abi_loader import (
    ABILoadError,
    decode_function_result,
    encode_function_call,
    get_abi_path,
    load_abi,
)

__all__ = [
    "ABILoadError",
    "decode_function_result",
    "encode_function_call",
    "get_abi_path",
    "load_abi",
]
