"""
NVTune - Configuration Module

Handles engine settings and logging setup.
"""

import json
import logging
from pathlib import Path
from dataclasses import dataclass, asdict
from typing import Dict, Any, Optional

from .autotune import AutoTuneConfig, AutoTuneTarget, SafetyMode
from .backend import GpuHandle, HardwareBackend
from .controller import SafeGpuController
from .retry import RetryPolicy
from .safety import BackgroundSafetyMonitor, SafetyMonitor, SafetyThresholds
from .stability import StabilityTester
from .stress import StressWorkload
from .telemetry import HardwareTelemetryProvider

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "nvtune"
CONFIG_FILE = CONFIG_DIR / "config.json"

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass
class AppConfig:
    """Application configuration."""

    # Safety thresholds
    temp_critical_celsius: int = 95
    temp_warning_celsius: int = 85
    max_power_limit_percent: int = 120
    min_fan_speed_percent: int = 20
    max_core_offset_mhz: int = 500
    max_memory_offset_mhz: int = 1000

    # Monitoring settings
    monitoring_interval_ms: int = 1000  # Background safety check interval

    # Stability testing
    stability_poll_interval_s: float = 2.0
    abort_temp_celsius: int = 90

    # Hardware write retries
    retry_attempts: int = 3
    retry_base_delay_s: float = 0.1

    # Auto-tune defaults
    autotune_target: str = "balanced"
    autotune_safety_mode: str = "conservative"
    autotune_max_temp_celsius: float = 85.0
    autotune_stability_test_s: float = 60.0
    autotune_stock_test_s: float = 30.0
    autotune_step_test_s: float = 10.0
    autotune_benchmark_s: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AppConfig":
        """Create config from dictionary. Unknown keys are ignored."""
        defaults = cls()
        known = {k: data.get(k, v) for k, v in asdict(defaults).items()}
        return cls(**known)

    def safety_thresholds(self) -> SafetyThresholds:
        return SafetyThresholds(
            temp_critical=self.temp_critical_celsius,
            temp_warning=self.temp_warning_celsius,
            max_power_limit_percent=self.max_power_limit_percent,
            min_fan_speed_percent=self.min_fan_speed_percent,
            max_clock_offset_mhz=self.max_core_offset_mhz,
            max_memory_offset_mhz=self.max_memory_offset_mhz,
        )

    def autotune_config(self) -> AutoTuneConfig:
        """
        Raises:
            ValueError: If the target or safety mode name is not recognized
        """
        return AutoTuneConfig(
            target=AutoTuneTarget(self.autotune_target),
            safety_mode=SafetyMode(self.autotune_safety_mode),
            max_temp_c=self.autotune_max_temp_celsius,
            stability_test_duration_s=self.autotune_stability_test_s,
            stock_test_duration_s=self.autotune_stock_test_s,
            step_test_duration_s=self.autotune_step_test_s,
            benchmark_duration_s=self.autotune_benchmark_s,
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay_s=self.retry_base_delay_s,
        )

    @property
    def monitor_interval_s(self) -> float:
        return self.monitoring_interval_ms / 1000.0

    def background_monitor(self, monitor: SafetyMonitor) -> BackgroundSafetyMonitor:
        return BackgroundSafetyMonitor(monitor, check_interval_s=self.monitor_interval_s)

    def stability_tester(
        self,
        backend: HardwareBackend,
        telemetry: HardwareTelemetryProvider,
        workload: StressWorkload,
        gpu: GpuHandle = 0,
    ) -> StabilityTester:
        """Tester with the configured poll interval, abort ceiling and thresholds."""
        return StabilityTester(
            backend,
            telemetry,
            workload,
            gpu=gpu,
            duration_s=self.autotune_stability_test_s,
            poll_interval_s=self.stability_poll_interval_s,
            abort_temp_c=self.abort_temp_celsius,
            thresholds=self.safety_thresholds(),
        )

    def create_controller(self, gpu: GpuHandle = 0) -> SafeGpuController:
        """Controller over the real hardware using these thresholds and retries."""
        return SafeGpuController.create(gpu, self.safety_thresholds(), self.retry_policy())


class ConfigManager:
    """Manages application configuration."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or CONFIG_FILE
        self._config: Optional[AppConfig] = None

    @property
    def config(self) -> AppConfig:
        """Get current configuration, loading from file if needed."""
        if self._config is None:
            self._config = self.load()
        return self._config

    def load(self) -> AppConfig:
        """Load configuration from file."""
        if not self.config_file.exists():
            logger.info("No config file found, using defaults")
            return AppConfig()

        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return AppConfig.from_dict(data)
        except (json.JSONDecodeError, ValueError, TypeError, IOError) as e:
            logger.warning(f"Failed to load config: {e}, using defaults")
            return AppConfig()

    def save(self, config: Optional[AppConfig] = None) -> bool:
        """Save configuration to file."""
        if config is not None:
            self._config = config

        if self._config is None:
            return False

        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                json.dump(self._config.to_dict(), f, indent=2)
            logger.info("Configuration saved")
            return True
        except IOError as e:
            logger.error(f"Failed to save config: {e}")
            return False

    def reset_to_defaults(self) -> AppConfig:
        """Reset configuration to defaults."""
        self._config = AppConfig()
        self.save()
        return self._config


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> AppConfig:
    """Get the current application configuration."""
    return get_config_manager().config


def save_config(config: Optional[AppConfig] = None) -> bool:
    """Save the current application configuration."""
    return get_config_manager().save(config)


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging for command-line use."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
