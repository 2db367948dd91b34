import os
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import FrozenSet, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigurationError
from .gateway import DEFAULT_ENDPOINTS

logger = logging.getLogger(__name__)

DEFAULT_ENV_PATH = Path.cwd() / '.env'

MAX_BATCH_SIZE = 50
SCHEDULES = ('manual', 'weekly', 'monthly')
COMMITMENTS = ('processed', 'confirmed', 'finalized')


@dataclass(frozen=True)
class NetworkConfig:
    rpc_url: str
    network: str = 'devnet'
    request_timeout: float = 30.0
    max_attempts: int = 3
    retry_delay: float = 1.0
    commitment: str = 'confirmed'

    def __post_init__(self):
        if not self.rpc_url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"RPC_URL must be an http(s) URL, got {self.rpc_url!r}")
        if self.request_timeout <= 0:
            raise ConfigurationError("REQUEST_TIMEOUT must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("RPC_MAX_ATTEMPTS must be at least 1")
        if self.retry_delay < 0:
            raise ConfigurationError("RETRY_DELAY cannot be negative")
        if self.commitment not in COMMITMENTS:
            raise ConfigurationError(f"COMMITMENT must be one of {', '.join(COMMITMENTS)}")


@dataclass(frozen=True)
class TokenConfig:
    mint: Optional[str] = None              # Token whose holders are snapshotted
    reward_mint: Optional[str] = None       # Token being distributed
    source_address: Optional[str] = None    # Wallet the rewards are sent from
    keypair_path: Optional[str] = None

    @property
    def distribution_mint(self) -> Optional[str]:
        return self.reward_mint or self.mint


@dataclass(frozen=True)
class CollectionConfig:
    threshold: int = 0
    exclude_addresses: FrozenSet[str] = frozenset()
    max_holders: Optional[int] = None
    cache_ttl: int = 1800
    cache_dir: str = '.cache/snapshots'

    def __post_init__(self):
        if self.threshold < 0:
            raise ConfigurationError("MINIMUM_BALANCE cannot be negative")
        if self.max_holders is not None and self.max_holders <= 0:
            raise ConfigurationError("MAX_HOLDERS must be positive")
        if self.cache_ttl < 0:
            raise ConfigurationError("CACHE_TTL cannot be negative")


@dataclass(frozen=True)
class DistributionConfig:
    batch_size: int = 10
    max_retries: int = 3
    confirm_poll_interval: float = 2.0
    confirm_timeout: float = 60.0
    batch_delay: float = 0.1
    ledger_dir: str = 'ledger'
    fee_per_transfer: Decimal = Decimal('0.000005')
    seconds_per_batch: float = 2.0
    large_amount_threshold: Decimal = Decimal('100000')
    large_recipient_count: int = 1000
    dust_amount: Decimal = Decimal('0.001')
    schedule: str = 'manual'

    def __post_init__(self):
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise ConfigurationError(f"BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}, got {self.batch_size}")
        if not 1 <= self.max_retries <= 10:
            raise ConfigurationError(f"MAX_RETRIES must be between 1 and 10, got {self.max_retries}")
        if self.confirm_poll_interval <= 0 or self.confirm_timeout <= 0:
            raise ConfigurationError("Confirmation poll interval and timeout must be positive")
        if self.batch_delay < 0:
            raise ConfigurationError("BATCH_DELAY cannot be negative")
        if self.schedule not in SCHEDULES:
            raise ConfigurationError(f"SCHEDULE must be one of {', '.join(SCHEDULES)}, got {self.schedule!r}")


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: Optional[str] = None
    admin_chat_id: Optional[str] = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.admin_chat_id)


@dataclass(frozen=True)
class AppConfig:
    network: NetworkConfig
    token: TokenConfig = field(default_factory=TokenConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    distribution: DistributionConfig = field(default_factory=DistributionConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    log_dir: Optional[str] = None
    dry_run: bool = False
    debug: bool = False


def _get_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _get_decimal(name: str, default: Decimal) -> Decimal:
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return Decimal(value)
    except ArithmeticError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}")


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _get_list(name: str) -> FrozenSet[str]:
    value = os.getenv(name, '')
    return frozenset(item.strip() for item in value.split(',') if item.strip())


def load_config(env_file: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Loads configuration from environment variables and .env files.

    The base .env in the working directory is read first; `env_file`, when
    given, overrides it. Variables already set in the environment win over
    the base file.

    Raises:
        ConfigurationError: a value is missing, malformed or out of range
    """
    if load_dotenv(dotenv_path=DEFAULT_ENV_PATH):
        logger.info(f"Loaded base configuration from {DEFAULT_ENV_PATH}")
    else:
        logger.debug(f"No base configuration at {DEFAULT_ENV_PATH}, relying on environment variables")

    if env_file is not None:
        env_path = Path(env_file)
        if not env_path.exists():
            raise ConfigurationError(f"Configuration file not found: {env_path}", {"path": str(env_path)})
        load_dotenv(dotenv_path=env_path, override=True)
        logger.info(f"Loaded and applied overrides from {env_path}")

    network = os.getenv('NETWORK', 'devnet')
    if network not in DEFAULT_ENDPOINTS:
        raise ConfigurationError(f"NETWORK must be one of {', '.join(DEFAULT_ENDPOINTS)}, got {network!r}")

    network_config = NetworkConfig(
        rpc_url=os.getenv('RPC_URL') or DEFAULT_ENDPOINTS[network],
        network=network,
        request_timeout=_get_float('REQUEST_TIMEOUT', 30.0),
        max_attempts=_get_int('RPC_MAX_ATTEMPTS', 3),
        retry_delay=_get_float('RETRY_DELAY', 1.0),
        commitment=os.getenv('COMMITMENT', 'confirmed'),
    )

    token_config = TokenConfig(
        mint=os.getenv('BASE_TOKEN') or None,
        reward_mint=os.getenv('REWARD_TOKEN') or None,
        source_address=os.getenv('ADMIN_WALLET') or None,
        keypair_path=os.getenv('ADMIN_KEYPAIR') or None,
    )

    collection_config = CollectionConfig(
        threshold=_get_int('MINIMUM_BALANCE', 0),
        exclude_addresses=_get_list('EXCLUDE_ADDRESSES'),
        max_holders=_get_int('MAX_HOLDERS', None),
        cache_ttl=_get_int('CACHE_TTL', 1800),
        cache_dir=os.getenv('CACHE_DIR', CollectionConfig.cache_dir),
    )

    distribution_config = DistributionConfig(
        batch_size=_get_int('BATCH_SIZE', 10),
        max_retries=_get_int('MAX_RETRIES', 3),
        confirm_poll_interval=_get_float('CONFIRM_POLL_INTERVAL', 2.0),
        confirm_timeout=_get_float('CONFIRM_TIMEOUT', 60.0),
        batch_delay=_get_float('BATCH_DELAY', 0.1),
        ledger_dir=os.getenv('LEDGER_DIR', DistributionConfig.ledger_dir),
        fee_per_transfer=_get_decimal('FEE_PER_TRANSFER', DistributionConfig.fee_per_transfer),
        large_amount_threshold=_get_decimal('LARGE_AMOUNT_THRESHOLD', DistributionConfig.large_amount_threshold),
        large_recipient_count=_get_int('LARGE_RECIPIENT_COUNT', 1000),
        dust_amount=_get_decimal('DUST_AMOUNT', DistributionConfig.dust_amount),
        schedule=os.getenv('SCHEDULE', 'manual').lower(),
    )

    telegram_config = TelegramConfig(
        bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
        admin_chat_id=os.getenv('TELEGRAM_ADMIN_CHAT_ID'),
    )

    config = AppConfig(
        network=network_config,
        token=token_config,
        collection=collection_config,
        distribution=distribution_config,
        telegram=telegram_config,
        log_dir=os.getenv('LOG_DIR') or None,
        dry_run=_get_bool('DRY_RUN'),
        debug=_get_bool('DEBUG'),
    )
    logger.debug(f"Configuration loaded for {network} ({network_config.rpc_url})")
    return config
