"""
FlashCycle 配置加载器

负责加载和验证链配置以及环境变量中的敏感信息和运行参数。
将静态 JSON 配置（代币、DEX、闪电贷提供者）与 .env 结合。
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv


CATEGORIES = ("stablecoin", "major", "defi", "nft_gaming", "other")
DEX_KINDS = ("v2", "v3", "curve")
FLASH_LOAN_PROTOCOLS = ("aave", "balancer", "custom")


@dataclass
class GasConfig:
    """区块链的 Gas 配置"""

    type: str  # "eip1559" 或 "legacy"
    priority_fee_multiplier: float = 1.1
    max_fee_multiplier: float = 1.5
    gas_price_multiplier: float = 1.1


@dataclass
class TokenSpec:
    """配置中的单个代币"""

    address: str
    category: str = "other"
    symbol: Optional[str] = None
    decimals: Optional[int] = None


@dataclass
class DexSpec:
    """单个 DEX 适配器的配置"""

    name: str
    kind: str  # "v2" / "v3" / "curve"
    address: str
    fee_tiers: List[int] = field(default_factory=lambda: [500, 3000, 10000])
    quoter_v2: bool = False


@dataclass
class ChainConfig:
    """单个区块链的完整配置"""

    name: str
    chain_id: int
    rpc_urls: List[str]
    native_token: str
    wnative_address: str
    gas_config: GasConfig
    block_time: float
    ws_urls: List[str] = field(default_factory=list)
    tokens: List[TokenSpec] = field(default_factory=list)
    dexes: List[DexSpec] = field(default_factory=list)
    popular_pairs: List[List[str]] = field(default_factory=list)
    flash_loan_providers: Dict[str, str] = field(default_factory=dict)
    coingecko_platform: str = ""
    fallback_prices: Dict[str, float] = field(default_factory=dict)

    # 敏感信息（从环境变量加载）
    private_key: Optional[str] = None
    executor_address: Optional[str] = None

    # 运行时设置
    rpc_timeout: int = 10
    max_retries: int = 3


@dataclass
class ArbitrageSettings:
    """
    套利流水线的运行参数

    默认值与生产配置保持一致，全部可通过环境变量覆盖。
    """

    # 环路搜索
    cycle_lengths: List[int] = field(default_factory=lambda: [3, 4, 5])
    max_cycles: int = 3000
    max_cycles_per_length: int = 1000
    exploration_ratio: float = 0.1
    scoring_seed: int = 1337
    cycle_cache_ttl: float = 30.0

    # 报价
    quote_cache_ttl: float = 15.0

    # 利润评估
    test_amounts: List[int] = field(default_factory=lambda: [10, 100, 1000, 5000])
    min_profit_percentage: float = 0.05
    max_profitable_cycles: int = 50
    adaptive_batch_size: bool = True
    progress_interval: int = 50

    # 策略
    min_profit_usd: float = 10.0
    slippage_tolerance_bps: int = 100
    reference_profit_usd: float = 100.0

    # 检测调度
    detection_interval: float = 15.0
    min_time_between_detections: float = 5.0
    max_tokens_to_consider: int = 40
    max_pairs_to_use: int = 400

    # 执行
    flash_loan_protocol: str = "custom"
    max_gas_gwei: float = 300.0
    base_gas_limit: int = 400_000
    gas_per_hop: int = 50_000
    tx_timeout: float = 60.0
    dry_run: bool = True


class ConfigValidationError(Exception):
    """配置验证失败时抛出的异常"""
    pass


def _env_int_list(name: str, default: List[int]) -> List[int]:
    raw = os.getenv(name)
    if not raw:
        return list(default)
    try:
        return [int(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError as e:
        raise ConfigValidationError(f"环境变量 {name} 必须是逗号分隔的整数: {raw}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigValidationError(f"环境变量 {name} 不是有效数字: {raw}") from e


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigValidationError(f"环境变量 {name} 不是有效整数: {raw}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("0x") and len(value) == 42


class ConfigLoader:
    """
    FlashCycle 配置管理器

    从 JSON 文件加载链配置（代币、DEX、闪电贷提供者），
    并与环境变量中的敏感信息和运行参数结合。

    使用示例:
        >>> loader = ConfigLoader()
        >>> chain = loader.get_chain_config("POLYGON")
        >>> settings = loader.get_settings()
        >>> print(chain.chain_id, settings.cycle_lengths)  # 137 [3, 4, 5]
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        env_path: Optional[str] = None
    ) -> None:
        """
        初始化配置加载器

        参数:
            config_path: chains.json 文件路径，默认为 config/chains.json
            env_path: .env 文件路径，默认为项目根目录的 .env
        """
        self._project_root = self._find_project_root()

        env_file = Path(env_path) if env_path else self._project_root / ".env"
        if env_file.exists():
            load_dotenv(env_file)

        config_file = Path(config_path) if config_path else self._project_root / "config" / "chains.json"
        self._raw_config = self._load_json_config(config_file)

        self._chain_cache: Dict[str, ChainConfig] = {}

        self._private_key = os.getenv("PRIVATE_KEY")
        self._executor_address = os.getenv("EXECUTOR_ADDRESS")
        self._rpc_timeout = _env_int("RPC_TIMEOUT", 10)
        self._max_retries = _env_int("MAX_RETRIES", 3)
        self._debug_mode = _env_bool("DEBUG_MODE", False)

    def _find_project_root(self) -> Path:
        """
        查找项目根目录

        通过查找 config 文件夹或 .git 来定位，最多向上 5 层。
        """
        current = Path(__file__).resolve().parent

        for _ in range(5):
            if (current / "config").is_dir() or (current / ".git").exists():
                return current
            current = current.parent

        return Path(__file__).resolve().parent.parent

    def _load_json_config(self, path: Path) -> Dict[str, Any]:
        """
        加载并验证 JSON 配置文件

        异常:
            ConfigValidationError: 文件不存在或 JSON 格式无效
        """
        if not path.exists():
            raise ConfigValidationError(f"配置文件不存在: {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigValidationError(f"{path} 中的 JSON 格式无效: {e}")

        if not isinstance(config, dict):
            raise ConfigValidationError("配置必须是一个 JSON 对象")

        return config

    def _validate_chain_config(self, name: str, config: Dict[str, Any]) -> None:
        """
        验证单个链的配置

        异常:
            ConfigValidationError: 缺少必需字段或字段无效
        """
        required_fields = [
            "chain_id", "rpc_urls", "native_token",
            "wnative_address", "gas_config", "tokens", "dexes",
        ]

        for field_name in required_fields:
            if field_name not in config:
                raise ConfigValidationError(
                    f"链 {name} 的配置中缺少必需字段 '{field_name}'"
                )

        if not isinstance(config["rpc_urls"], list) or len(config["rpc_urls"]) == 0:
            raise ConfigValidationError(f"链 {name} 必须至少配置一个 RPC URL")

        gas_type = config["gas_config"].get("type")
        if gas_type not in ("eip1559", "legacy"):
            raise ConfigValidationError(
                f"链 {name} 的 gas_config type 无效: 必须是 'eip1559' 或 'legacy'"
            )

        if not _is_address(config["wnative_address"]):
            raise ConfigValidationError(
                f"链 {name} 的 wnative_address 无效: {config['wnative_address']}"
            )

        for category in config["tokens"]:
            if category not in CATEGORIES:
                raise ConfigValidationError(f"链 {name} 的代币分类无效: {category}")

        for dex in config["dexes"]:
            if dex.get("kind") not in DEX_KINDS:
                raise ConfigValidationError(
                    f"链 {name} 的 DEX {dex.get('name')} 类型无效: {dex.get('kind')}"
                )
            if not _is_address(dex.get("address")):
                raise ConfigValidationError(
                    f"链 {name} 的 DEX {dex.get('name')} 地址无效: {dex.get('address')}"
                )

    def _get_rpc_override(self, chain_name: str) -> Optional[List[str]]:
        """
        从环境变量 {CHAIN}_RPC_OVERRIDE 获取 RPC URL 覆盖配置（逗号分隔）
        """
        override = os.getenv(f"{chain_name}_RPC_OVERRIDE")

        if override:
            return [url.strip() for url in override.split(",") if url.strip()]
        return None

    def _parse_gas_config(self, raw_config: Dict[str, Any]) -> GasConfig:
        return GasConfig(
            type=raw_config.get("type", "legacy"),
            priority_fee_multiplier=raw_config.get("priority_fee_multiplier", 1.1),
            max_fee_multiplier=raw_config.get("max_fee_multiplier", 1.5),
            gas_price_multiplier=raw_config.get("gas_price_multiplier", 1.1),
        )

    def _parse_tokens(self, raw_tokens: Dict[str, List[Any]]) -> List[TokenSpec]:
        """
        解析按分类分组的代币列表

        每个条目可以是地址字符串，或带 address/symbol/decimals 的对象。
        保持配置顺序（分类顺序，组内顺序）。
        """
        tokens: List[TokenSpec] = []
        for category in CATEGORIES:
            for entry in raw_tokens.get(category, []):
                if isinstance(entry, str):
                    tokens.append(TokenSpec(address=entry, category=category))
                else:
                    tokens.append(TokenSpec(
                        address=entry["address"],
                        category=category,
                        symbol=entry.get("symbol"),
                        decimals=entry.get("decimals"),
                    ))
        return tokens

    def _parse_dexes(self, raw_dexes: List[Dict[str, Any]]) -> List[DexSpec]:
        return [
            DexSpec(
                name=dex["name"],
                kind=dex["kind"],
                address=dex["address"],
                fee_tiers=dex.get("fee_tiers", [500, 3000, 10000]),
                quoter_v2=dex.get("quoter_v2", False),
            )
            for dex in raw_dexes
        ]

    def get_chain_config(self, chain_name: str) -> ChainConfig:
        """
        获取指定链的完整配置

        将静态 JSON 配置与环境变量中的敏感信息合并。结果会被缓存。

        参数:
            chain_name: 链名称（如 "POLYGON"、"BASE"）

        返回:
            ChainConfig 对象

        异常:
            ConfigValidationError: 链不存在或配置无效
        """
        chain_name = chain_name.upper()

        if chain_name in self._chain_cache:
            return self._chain_cache[chain_name]

        if chain_name not in self._raw_config:
            available = ", ".join(self._raw_config.keys())
            raise ConfigValidationError(
                f"链 '{chain_name}' 不存在。可用的链: {available}"
            )

        raw = self._raw_config[chain_name]
        self._validate_chain_config(chain_name, raw)

        rpc_urls = self._get_rpc_override(chain_name) or raw["rpc_urls"]

        config = ChainConfig(
            name=chain_name,
            chain_id=raw["chain_id"],
            rpc_urls=rpc_urls,
            native_token=raw["native_token"],
            wnative_address=raw["wnative_address"],
            gas_config=self._parse_gas_config(raw["gas_config"]),
            block_time=raw.get("block_time", 12),
            ws_urls=raw.get("ws_urls", []),
            tokens=self._parse_tokens(raw["tokens"]),
            dexes=self._parse_dexes(raw["dexes"]),
            popular_pairs=raw.get("popular_pairs", []),
            flash_loan_providers=raw.get("flash_loan_providers", {}),
            coingecko_platform=raw.get("coingecko_platform", ""),
            fallback_prices={
                addr.lower(): float(price)
                for addr, price in raw.get("fallback_prices", {}).items()
            },
            private_key=self._private_key,
            executor_address=self._executor_address,
            rpc_timeout=self._rpc_timeout,
            max_retries=self._max_retries,
        )

        self._chain_cache[chain_name] = config
        return config

    def get_settings(self) -> ArbitrageSettings:
        """
        从环境变量构建套利运行参数

        返回:
            ArbitrageSettings 对象

        异常:
            ConfigValidationError: 参数格式或取值无效
        """
        defaults = ArbitrageSettings()
        settings = ArbitrageSettings(
            cycle_lengths=_env_int_list("CYCLE_LENGTHS", defaults.cycle_lengths),
            max_cycles=_env_int("MAX_CYCLES", defaults.max_cycles),
            max_cycles_per_length=_env_int("MAX_CYCLES_PER_LENGTH", defaults.max_cycles_per_length),
            exploration_ratio=_env_float("EXPLORATION_RATIO", defaults.exploration_ratio),
            scoring_seed=_env_int("SCORING_SEED", defaults.scoring_seed),
            cycle_cache_ttl=_env_float("CYCLE_CACHE_TTL", defaults.cycle_cache_ttl),
            quote_cache_ttl=_env_float("QUOTE_CACHE_TTL", defaults.quote_cache_ttl),
            test_amounts=_env_int_list("TEST_AMOUNTS", defaults.test_amounts),
            min_profit_percentage=_env_float("MIN_PROFIT_PERCENTAGE", defaults.min_profit_percentage),
            max_profitable_cycles=_env_int("MAX_PROFITABLE_CYCLES", defaults.max_profitable_cycles),
            adaptive_batch_size=_env_bool("ADAPTIVE_BATCH_SIZE", defaults.adaptive_batch_size),
            min_profit_usd=_env_float("MIN_PROFIT_USD", defaults.min_profit_usd),
            slippage_tolerance_bps=_env_int("SLIPPAGE_TOLERANCE_BPS", defaults.slippage_tolerance_bps),
            reference_profit_usd=_env_float("REFERENCE_PROFIT_USD", defaults.reference_profit_usd),
            detection_interval=_env_float("DETECTION_INTERVAL", defaults.detection_interval),
            min_time_between_detections=_env_float(
                "MIN_TIME_BETWEEN_DETECTIONS", defaults.min_time_between_detections
            ),
            max_tokens_to_consider=_env_int("MAX_TOKENS_TO_CONSIDER", defaults.max_tokens_to_consider),
            max_pairs_to_use=_env_int("MAX_PAIRS_TO_USE", defaults.max_pairs_to_use),
            flash_loan_protocol=os.getenv("FLASH_LOAN_PROTOCOL", defaults.flash_loan_protocol).lower(),
            max_gas_gwei=_env_float("MAX_GAS_GWEI", defaults.max_gas_gwei),
            base_gas_limit=_env_int("BASE_GAS_LIMIT", defaults.base_gas_limit),
            gas_per_hop=_env_int("GAS_PER_HOP", defaults.gas_per_hop),
            tx_timeout=_env_float("TX_TIMEOUT", defaults.tx_timeout),
            dry_run=_env_bool("DRY_RUN", defaults.dry_run),
        )
        self._validate_settings(settings)
        return settings

    def _validate_settings(self, settings: ArbitrageSettings) -> None:
        if not settings.cycle_lengths or min(settings.cycle_lengths) < 3:
            raise ConfigValidationError(
                f"CYCLE_LENGTHS 中每个长度必须 >= 3: {settings.cycle_lengths}"
            )
        if not settings.test_amounts or min(settings.test_amounts) <= 0:
            raise ConfigValidationError(
                f"TEST_AMOUNTS 必须为正数: {settings.test_amounts}"
            )
        if not 0.0 <= settings.exploration_ratio <= 1.0:
            raise ConfigValidationError(
                f"EXPLORATION_RATIO 必须在 [0, 1] 之间: {settings.exploration_ratio}"
            )
        if not 0 <= settings.slippage_tolerance_bps < 10_000:
            raise ConfigValidationError(
                f"SLIPPAGE_TOLERANCE_BPS 无效: {settings.slippage_tolerance_bps}"
            )
        if settings.flash_loan_protocol not in FLASH_LOAN_PROTOCOLS:
            raise ConfigValidationError(
                f"FLASH_LOAN_PROTOCOL 必须是 {FLASH_LOAN_PROTOCOLS} 之一: "
                f"{settings.flash_loan_protocol}"
            )
        if settings.tx_timeout <= 0:
            raise ConfigValidationError(f"TX_TIMEOUT 必须为正数: {settings.tx_timeout}")

    def get_available_chains(self) -> List[str]:
        """返回 chains.json 中配置的所有链名称"""
        return list(self._raw_config.keys())

    @property
    def debug_mode(self) -> bool:
        """检查是否启用了调试模式"""
        return self._debug_mode

    @property
    def has_private_key(self) -> bool:
        """检查是否已配置私钥"""
        return self._private_key is not None and len(self._private_key) > 0

