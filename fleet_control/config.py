"""
Configuration management for the fleet controller.
"""

import logging
import os
import re
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, Union, List
from dataclasses import dataclass, field, asdict
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .policies import DEFAULT_HOURLY_TABLE, HOURS_PER_DAY, PolicyType

logger = logging.getLogger(__name__)

DURATION_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)(ms|s|min|h)$')
DURATION_UNITS = {"ms": 0.001, "s": 1.0, "min": 60.0, "h": 3600.0}

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded"""
    pass


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration like '15min', '30s', '2h' or '500ms' into seconds.

    Plain numbers are taken as seconds.
    """
    if isinstance(value, (int, float)):
        return float(value)

    match = DURATION_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid duration format: {value!r} (expected e.g. '30s', '15min', '2h')")

    amount, unit = match.groups()
    return float(amount) * DURATION_UNITS[unit]


@dataclass
class HostConfig:
    """Connection settings for one backend host"""
    url: str
    password: str = ""
    name: Optional[str] = None

    def __post_init__(self):
        if not self.url:
            raise ValueError("host url cannot be empty")


@dataclass
class HourlyCurveConfig:
    """Fraction of max_workers to keep active for each hour of the day"""
    table: List[float] = field(default_factory=lambda: list(DEFAULT_HOURLY_TABLE))

    def __post_init__(self):
        if len(self.table) != HOURS_PER_DAY:
            raise ValueError(f"table must have {HOURS_PER_DAY} entries")

        if any(value < 0 or value > 1 for value in self.table):
            raise ValueError("table values must be between 0 and 1")


@dataclass
class SinusoidalConfig:
    """Configuration for the sine-shaped daily curve"""
    phase_shift: float = -6.0  # hours


@dataclass
class PeakDipConfig:
    """Configuration for the peak/dip hour multiplier"""
    peak_hours: List[int] = field(default_factory=lambda: [18, 19, 20, 21])
    dip_hours: List[int] = field(default_factory=lambda: [2, 3, 4, 5])
    peak_factor: float = 1.5
    dip_factor: float = 0.5
    batch_divisor: float = 4.0

    def __post_init__(self):
        for hour in list(self.peak_hours) + list(self.dip_hours):
            if not 0 <= hour < HOURS_PER_DAY:
                raise ValueError("peak_hours and dip_hours must be between 0 and 23")

        if set(self.peak_hours) & set(self.dip_hours):
            raise ValueError("peak_hours and dip_hours must not overlap")

        if self.peak_factor < 1:
            raise ValueError("peak_factor must be >= 1")

        if not 0 <= self.dip_factor < 1:
            raise ValueError("dip_factor must be >= 0 and < 1")

        if self.batch_divisor <= 0:
            raise ValueError("batch_divisor must be positive")


@dataclass
class DemandConfig:
    """Configuration for the demand signal and the proportional policy"""
    multiplication_factor: float = 1.0
    page_size: int = 1000
    table: str = "players"
    flag_column: str = "is_online"
    url: Optional[str] = None
    key: Optional[str] = None

    def __post_init__(self):
        if self.multiplication_factor < 0:
            raise ValueError("multiplication_factor must be non-negative")

        if self.page_size <= 0:
            raise ValueError("page_size must be positive")


@dataclass
class LoggingConfig:
    """Configuration for console logging"""
    log_level: str = "INFO"
    verbose: bool = False

    def __post_init__(self):
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")


@dataclass
class HttpConfig:
    """Configuration for calls to the backend hosts"""
    timeout: float = 30.0  # seconds

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass
class FleetControllerConfig:
    """Main configuration for the fleet controller"""
    max_workers: int = 600
    cycle_period: str = "15min"
    policy: str = PolicyType.SINUSOIDAL.value
    timezone: str = "UTC"
    batch_size: int = 1
    discovery_workers: int = 4
    randomize_initial_split: bool = True

    hourly_curve: HourlyCurveConfig = field(default_factory=HourlyCurveConfig)
    sinusoidal: SinusoidalConfig = field(default_factory=SinusoidalConfig)
    peak_dip: PeakDipConfig = field(default_factory=PeakDipConfig)
    demand: DemandConfig = field(default_factory=DemandConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    hosts: List[HostConfig] = field(default_factory=list)

    def __post_init__(self):
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")

        if parse_duration(self.cycle_period) <= 0:
            raise ValueError("cycle_period must be positive")

        valid_policies = [p.value for p in PolicyType]
        if self.policy not in valid_policies:
            raise ValueError(f"policy must be one of {valid_policies}")

        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        if self.discovery_workers < 1:
            raise ValueError("discovery_workers must be at least 1")

        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {self.timezone}")

    @property
    def cycle_period_seconds(self) -> float:
        return parse_duration(self.cycle_period)

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def policy_type(self) -> PolicyType:
        return PolicyType(self.policy)


class ConfigManager:
    """
    Manages loading, validation, and merging of configuration from multiple sources.

    Supports loading from:
    - YAML files
    - Environment variables
    - Python dictionaries
    - Default values
    """

    # Env var suffix -> config section; anything else lands at the top level
    SECTION_MAPPING = {
        'phase_shift': 'sinusoidal',
        'peak_factor': 'peak_dip',
        'dip_factor': 'peak_dip',
        'batch_divisor': 'peak_dip',
        'multiplication_factor': 'demand',
        'page_size': 'demand',
        'table': 'demand',
        'flag_column': 'demand',
        'log_level': 'logging',
        'verbose': 'logging',
        'timeout': 'http',
    }

    def __init__(self):
        self._config: Optional[FleetControllerConfig] = None
        self._config_sources: List[str] = []

    def load_from_file(self, config_path: Union[str, Path]) -> FleetControllerConfig:
        """
        Load configuration from a YAML file.

        Raises:
            ConfigError: If file cannot be loaded or is invalid
        """
        config_path = Path(config_path)

        if not config_path.exists():
            raise ConfigError(f"Configuration file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)

            if data is None:
                data = {}

            config = self._create_config_from_dict(data)
            self._config = config
            self._config_sources.append(f"file:{config_path}")

            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in config file {config_path}: {e}")
        except Exception as e:
            raise ConfigError(f"Failed to load config file {config_path}: {e}")

    def load_from_dict(self, config_dict: Dict[str, Any]) -> FleetControllerConfig:
        """Load configuration from a dictionary"""
        try:
            config = self._create_config_from_dict(config_dict)
            self._config = config
            self._config_sources.append("dict")

            return config

        except Exception as e:
            raise ConfigError(f"Failed to load config from dictionary: {e}")

    def load_from_env(self, prefix: str = "FLEET_CONTROL_") -> Dict[str, Any]:
        """
        Load configuration values from environment variables.

        Besides the prefixed variables, the deployment's ASF_APIS /
        ASF_PASSWORDS pair and SUPABASE_URL / SUPABASE_ANON_KEY are read.

        Raises:
            ConfigError: If ASF_APIS and ASF_PASSWORDS do not pair up
        """
        env_config: Dict[str, Any] = {section: {} for section in set(self.SECTION_MAPPING.values())}

        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue

            config_key = key[len(prefix):].lower()
            converted_value = self._convert_env_value(value)

            if config_key in ('peak_hours', 'dip_hours'):
                try:
                    env_config['peak_dip'][config_key] = [int(v) for v in value.split(',') if v.strip()]
                except ValueError:
                    raise ConfigError(f"{key} must be a comma-separated list of hours, got '{value}'")
            elif config_key in self.SECTION_MAPPING:
                env_config[self.SECTION_MAPPING[config_key]][config_key] = converted_value
            else:
                env_config[config_key] = converted_value

        hosts = self._hosts_from_env()
        if hosts:
            env_config['hosts'] = hosts

        if os.environ.get('SUPABASE_URL'):
            env_config['demand']['url'] = os.environ['SUPABASE_URL']
        if os.environ.get('SUPABASE_ANON_KEY'):
            env_config['demand']['key'] = os.environ['SUPABASE_ANON_KEY']

        # Remove empty sections
        env_config = {k: v for k, v in env_config.items() if v != {}}

        if env_config:
            self._config_sources.append(f"env:{prefix}")

        return env_config

    def _hosts_from_env(self) -> List[Dict[str, Any]]:
        apis = [v.strip() for v in os.environ.get('ASF_APIS', '').split(',') if v.strip()]
        if not apis:
            return []

        passwords = [v.strip() for v in os.environ.get('ASF_PASSWORDS', '').split(',')]
        if len(passwords) != len(apis):
            raise ConfigError(
                f"ASF_APIS has {len(apis)} entries but ASF_PASSWORDS has {len(passwords)}"
            )

        return [{'url': url, 'password': password} for url, password in zip(apis, passwords)]

    def apply_overrides(self, config: FleetControllerConfig, overrides: Dict[str, Any]) -> FleetControllerConfig:
        """
        Apply a partial dictionary on top of a configuration.

        Only the keys present in overrides change.
        """
        try:
            merged = self._deep_merge_dicts(asdict(config), overrides)
            merged_config = self._create_config_from_dict(merged)
        except ConfigError:
            raise
        except Exception as e:
            raise ConfigError(f"Invalid configuration override: {e}")

        self._config = merged_config
        return merged_config

    def load_default_config(self) -> FleetControllerConfig:
        """Load default configuration"""
        config = FleetControllerConfig()
        self._config = config
        self._config_sources.append("default")

        return config

    def get_config_sources(self) -> List[str]:
        """Get list of configuration sources that were loaded"""
        return self._config_sources.copy()

    def save_to_file(self, config_path: Union[str, Path],
                     config: Optional[FleetControllerConfig] = None) -> None:
        """
        Save configuration to a YAML file.

        Raises:
            ConfigError: If configuration cannot be saved
        """
        if config is None:
            config = self._config

        if config is None:
            raise ConfigError("No configuration to save")

        config_path = Path(config_path)

        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(config_path, 'w') as f:
                yaml.safe_dump(asdict(config), f, default_flow_style=False, indent=2, sort_keys=False)

        except Exception as e:
            raise ConfigError(f"Failed to save config to {config_path}: {e}")

    def validate_config(self, config: FleetControllerConfig) -> List[str]:
        """
        Validate configuration and return list of validation errors.

        Returns:
            List of validation error messages (empty if valid)
        """
        errors = []

        if not config.hosts:
            errors.append("No hosts configured (set 'hosts' or ASF_APIS/ASF_PASSWORDS)")

        urls = [host.url for host in config.hosts]
        duplicates = sorted({url for url in urls if urls.count(url) > 1})
        for url in duplicates:
            errors.append(f"Host listed more than once: {url}")

        for index, host in enumerate(config.hosts):
            if not host.url.startswith(("http://", "https://")):
                errors.append(f"Host {index} url must start with http:// or https://: {host.url}")
            if not host.password:
                errors.append(f"Host {index} has no IPC password")

        if config.policy_type == PolicyType.DEMAND_PROPORTIONAL:
            if not config.demand.url or not config.demand.key:
                errors.append("demand_proportional policy needs demand.url and demand.key "
                              "(or SUPABASE_URL/SUPABASE_ANON_KEY)")

        return errors

    def _create_config_from_dict(self, data: Dict[str, Any]) -> FleetControllerConfig:
        """Create configuration object from dictionary"""
        hosts = [HostConfig(**host) for host in data.get('hosts') or []]

        main_config = FleetControllerConfig(
            max_workers=data.get('max_workers', 600),
            cycle_period=data.get('cycle_period', '15min'),
            policy=data.get('policy', PolicyType.SINUSOIDAL.value),
            timezone=data.get('timezone', 'UTC'),
            batch_size=data.get('batch_size', 1),
            discovery_workers=data.get('discovery_workers', 4),
            randomize_initial_split=data.get('randomize_initial_split', True),
            hourly_curve=HourlyCurveConfig(**(data.get('hourly_curve') or {})),
            sinusoidal=SinusoidalConfig(**(data.get('sinusoidal') or {})),
            peak_dip=PeakDipConfig(**(data.get('peak_dip') or {})),
            demand=DemandConfig(**(data.get('demand') or {})),
            logging=LoggingConfig(**(data.get('logging') or {})),
            http=HttpConfig(**(data.get('http') or {})),
            hosts=hosts,
        )

        return main_config

    def _deep_merge_dicts(self, dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries"""
        result = dict1.copy()

        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge_dicts(result[key], value)
            else:
                result[key] = value

        return result

    def _convert_env_value(self, value: str) -> Any:
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'
        if value.isdigit():
            return int(value)
        if self._is_float(value):
            return float(value)
        return value

    def _is_float(self, value: str) -> bool:
        """Check if string represents a float"""
        try:
            float(value)
            return True
        except ValueError:
            return False


def load_config_from_file(config_path: Union[str, Path]) -> FleetControllerConfig:
    """Convenience function to load configuration from a file"""
    manager = ConfigManager()
    return manager.load_from_file(config_path)


def load_config_with_env_override(config_path: Optional[Union[str, Path]] = None,
                                  env_prefix: str = "FLEET_CONTROL_") -> FleetControllerConfig:
    """
    Load configuration from file with environment variable overrides.

    Args:
        config_path: Path to configuration file (optional)
        env_prefix: Prefix for environment variables

    Returns:
        Configuration with environment overrides applied
    """
    manager = ConfigManager()

    if config_path:
        base_config = manager.load_from_file(config_path)
    else:
        base_config = manager.load_default_config()

    env_config_dict = manager.load_from_env(env_prefix)
    if env_config_dict:
        base_config = manager.apply_overrides(base_config, env_config_dict)

    logger.debug(f"Configuration loaded from {', '.join(manager.get_config_sources())}")
    return base_config


def create_default_config_file(config_path: Union[str, Path]) -> None:
    """
    Create a default configuration file with example values.

    Args:
        config_path: Path where to create the configuration file
    """
    manager = ConfigManager()
    config = FleetControllerConfig()

    config.hosts = [
        HostConfig(url="http://asf-1.internal:1242/Api", password="change-me", name="asf-1"),
        HostConfig(url="http://asf-2.internal:1242/Api", password="change-me", name="asf-2"),
    ]
    config.demand.url = "https://your-project.supabase.co"
    config.demand.key = "your-anon-key"

    manager.save_to_file(config_path, config)
