"""
FlashCycle ABI 加载器

从包内 abis 目录加载和缓存合约 ABI，并提供基于 ABI 的
调用数据编码 / 返回值解码辅助函数（DEX 适配器和执行器共用）。

⚡ 高性能优化:
- 使用 orjson 进行快速 JSON 解析
- 函数选择器按 (ABI 文件, 函数名) 缓存
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import orjson
from eth_abi import decode, encode
from web3 import Web3


class ABILoadError(Exception):
    """ABI 加载失败时抛出的异常"""
    pass


# 已加载 ABI 的缓存（模块级别）
_abi_cache: Dict[str, List[Dict[str, Any]]] = {}

ABIS_DIR = Path(__file__).resolve().parent.parent / "abis"


def get_abi_path(file_name: str) -> Path:
    """
    获取 ABI 文件的完整路径

    参数:
        file_name: ABI 文件名（带或不带 .json 扩展名）

    返回:
        ABI 文件的完整路径
    """
    if not file_name.endswith(".json"):
        file_name = f"{file_name}.json"

    return ABIS_DIR / file_name


def load_abi(
    file_name: str,
    use_cache: bool = True,
) -> List[Dict[str, Any]]:
    """
    从 abis 目录加载合约 ABI

    支持原始 ABI 数组和 {"abi": [...]} 包装格式。

    参数:
        file_name: ABI 文件名（带或不带 .json 扩展名）
        use_cache: 是否使用缓存的 ABI（默认: True）

    返回:
        包含函数/事件定义的 ABI 列表

    异常:
        ABILoadError: 如果文件不存在或包含无效的 JSON

    示例:
        >>> abi = load_abi("uniswap_v2_router")
    """
    if not file_name.endswith(".json"):
        file_name = f"{file_name}.json"

    if use_cache and file_name in _abi_cache:
        return _abi_cache[file_name]

    abi_path = get_abi_path(file_name)

    if not abi_path.exists():
        raise ABILoadError(
            f"ABI 文件不存在: {abi_path}\n"
            f"请确保 ABI 文件存在于 'abis' 目录中。"
        )

    try:
        content = orjson.loads(abi_path.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ABILoadError(f"{abi_path} 中的 JSON 格式无效: {e}") from e
    except OSError as e:
        raise ABILoadError(f"读取 {abi_path} 失败: {e}") from e

    if isinstance(content, dict) and "abi" in content:
        abi = content["abi"]
    elif isinstance(content, list):
        abi = content
    else:
        raise ABILoadError(
            f"{file_name} 中的 ABI 格式无效。"
            f"期望列表或带有 'abi' 键的字典，得到 {type(content).__name__}"
        )

    if use_cache:
        _abi_cache[file_name] = abi

    return abi


# =====================================================
# 选择器与编解码
# =====================================================

def _canonical_type(param: Dict[str, Any]) -> str:
    """
    返回参数的规范 ABI 类型

    tuple 类型会展开为 (t1,t2,...) 形式，保留数组后缀。
    """
    abi_type = param.get("type", "")
    if abi_type.startswith("tuple"):
        inner = ",".join(_canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def get_function_by_name(
    abi: List[Dict[str, Any]],
    function_name: str,
) -> Optional[Dict[str, Any]]:
    """
    通过名称在 ABI 中查找函数定义

    返回:
        函数 ABI 条目，如果未找到则返回 None
    """
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == function_name:
            return entry
    return None


def get_event_by_name(
    abi: List[Dict[str, Any]],
    event_name: str,
) -> Optional[Dict[str, Any]]:
    """通过名称在 ABI 中查找事件定义"""
    for entry in abi:
        if entry.get("type") == "event" and entry.get("name") == event_name:
            return entry
    return None


def extract_function_selector(abi_entry: Dict[str, Any]) -> Optional[str]:
    """
    从 ABI 条目中提取 4 字节函数选择器

    参数:
        abi_entry: 单个 ABI 条目（函数定义）

    返回:
        函数选择器（0x... 格式），如果不是函数则返回 None
    """
    if abi_entry.get("type") != "function":
        return None

    name = abi_entry.get("name", "")
    input_types = ",".join(_canonical_type(inp) for inp in abi_entry.get("inputs", []))
    signature = f"{name}({input_types})"

    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def event_topic(abi_entry: Dict[str, Any]) -> bytes:
    """计算事件签名的 topic0"""
    input_types = ",".join(_canonical_type(inp) for inp in abi_entry.get("inputs", []))
    return bytes(Web3.keccak(text=f"{abi_entry['name']}({input_types})"))


@lru_cache(maxsize=128)
def _function_spec(abi_name: str, function_name: str) -> Tuple[bytes, Tuple[str, ...], Tuple[str, ...]]:
    abi = load_abi(abi_name)
    entry = get_function_by_name(abi, function_name)
    if entry is None:
        raise ABILoadError(f"{abi_name} 中不存在函数 {function_name}")

    selector = bytes.fromhex(extract_function_selector(entry)[2:])
    input_types = tuple(_canonical_type(p) for p in entry.get("inputs", []))
    output_types = tuple(_canonical_type(p) for p in entry.get("outputs", []))
    return selector, input_types, output_types


def encode_function_call(abi_name: str, function_name: str, args: Sequence[Any]) -> bytes:
    """
    编码合约函数调用数据（选择器 + ABI 编码参数）

    参数:
        abi_name: ABI 文件名
        function_name: 函数名
        args: 参数列表，顺序与 ABI 一致

    返回:
        调用数据字节

    示例:
        >>> data = encode_function_call("uniswap_v2_router", "getAmountsOut", [10**18, [a, b]])
    """
    selector, input_types, _ = _function_spec(abi_name, function_name)
    return selector + encode(list(input_types), list(args))


def decode_function_result(abi_name: str, function_name: str, data: bytes) -> Tuple[Any, ...]:
    """
    按 ABI 输出类型解码 eth_call 返回值

    返回:
        解码后的值元组
    """
    _, _, output_types = _function_spec(abi_name, function_name)
    return decode(list(output_types), bytes(data))
