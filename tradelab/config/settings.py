"""
Configuration loading and management.
Loads settings from YAML files and environment variables.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional
import yaml

from ..backtest.comparison import ComparisonConfig
from ..backtest.config import BacktestConfig
from ..backtest.optimizer.config import OptimizerConfig
from ..backtest.walk_forward import WalkForwardConfig


@dataclass
class BacktestSettings:
    """Simulation configuration."""
    pair: str = "BTC/USD"
    initial_capital: float = 10000.0
    commission_rate: float = 0.001
    slippage_rate: float = 0.0005
    stop_loss_percent: Optional[float] = 0.02  # null/0 disables
    take_profit_percent: Optional[float] = 0.04
    max_open_positions: int = 3
    min_trade_size: float = 0.0
    position_size_fraction: float = 0.1
    allow_short: bool = True

    def to_backtest_config(self) -> BacktestConfig:
        return BacktestConfig.from_dict(vars(self))


@dataclass
class OptimizerSettings:
    """Parameter search configuration."""
    method: str = "grid"
    objective: str = "composite"
    n_random_samples: int = 100
    population_size: int = 50
    max_generations: int = 100
    mutation_rate: float = 0.1
    crossover_rate: float = 0.8
    elite_size: int = 5
    tournament_size: int = 3
    convergence_threshold: float = 0.001
    convergence_generations: int = 10
    n_trials: int = 100
    seed: Optional[int] = 42
    n_jobs: int = 1
    backend: str = "process"
    progress_interval: int = 50

    def to_optimizer_config(self) -> OptimizerConfig:
        return OptimizerConfig.from_dict(vars(self))


@dataclass
class WalkForwardSettings:
    """Walk-forward window layout."""
    window_size: int = 500
    step_size: int = 100
    min_periods: int = 20
    optimization_periods: int = 400
    test_periods: int = 100
    method: Optional[str] = None
    objective: Optional[str] = None
    degradation_epsilon: float = 0.01

    def to_walk_forward_config(self) -> WalkForwardConfig:
        return WalkForwardConfig(**vars(self))


@dataclass
class ComparisonSettings:
    """Strategy comparison configuration."""
    monte_carlo_runs: int = 1000
    sensitivity_range: float = 0.20
    sensitivity_step: float = 0.05
    run_sensitivity: bool = True
    seed: Optional[int] = 42
    n_jobs: int = 1
    backend: str = "process"

    def to_comparison_config(self) -> ComparisonConfig:
        return ComparisonConfig(**vars(self))


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "json"


@dataclass
class Settings:
    """Main application settings container."""
    backtest: BacktestSettings = field(default_factory=BacktestSettings)
    optimizer: OptimizerSettings = field(default_factory=OptimizerSettings)
    walk_forward: WalkForwardSettings = field(default_factory=WalkForwardSettings)
    comparison: ComparisonSettings = field(default_factory=ComparisonSettings)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _find_config_file() -> Optional[Path]:
    """
    Find the configuration file.

    Returns:
        Path to config file or None if not found.
    """
    # Check environment variable first
    env_config = os.environ.get("CONFIG_PATH")
    if env_config:
        path = Path(env_config)
        if path.exists():
            return path

    search_paths = [
        Path("config/config.yaml"),
        Path("config.yaml"),
    ]

    for path in search_paths:
        if path.exists():
            return path

    return None


def _dict_to_config(data: dict, config_class, existing=None):
    """
    Apply dictionary values to a dataclass, preserving defaults for missing keys.

    Unknown keys are ignored.
    """
    if existing is None:
        existing = config_class()

    if data is None:
        return existing

    for key, value in data.items():
        if hasattr(existing, key):
            setattr(existing, key, value)

    return existing


def load_settings(config_path: Optional[str] = None) -> Settings:
    """
    Load settings from configuration file and environment.

    Args:
        config_path: Optional explicit path to config file.

    Returns:
        Settings instance with loaded configuration.
    """
    settings = Settings()

    if config_path:
        path = Path(config_path)
    else:
        path = _find_config_file()

    if path and path.exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f)

        if data:
            settings.backtest = _dict_to_config(
                data.get("backtest"), BacktestSettings, settings.backtest
            )
            settings.optimizer = _dict_to_config(
                data.get("optimizer"), OptimizerSettings, settings.optimizer
            )
            settings.walk_forward = _dict_to_config(
                data.get("walk_forward"), WalkForwardSettings, settings.walk_forward
            )
            settings.comparison = _dict_to_config(
                data.get("comparison"), ComparisonSettings, settings.comparison
            )
            settings.logging = _dict_to_config(
                data.get("logging"), LoggingConfig, settings.logging
            )

    _apply_env_overrides(settings)

    return settings


def _apply_env_overrides(settings: Settings) -> None:
    """
    Apply environment variable overrides to settings.

    Args:
        settings: Settings instance to modify.
    """
    if log_level := os.environ.get("TRADELAB_LOG_LEVEL"):
        settings.logging.level = log_level.upper()

    if n_jobs := os.environ.get("TRADELAB_N_JOBS"):
        settings.optimizer.n_jobs = int(n_jobs)
        settings.comparison.n_jobs = int(n_jobs)

    if seed := os.environ.get("TRADELAB_SEED"):
        settings.optimizer.seed = int(seed)
        settings.comparison.seed = int(seed)

    if capital := os.environ.get("TRADELAB_INITIAL_CAPITAL"):
        settings.backtest.initial_capital = float(capital)


# Global settings instance (lazy loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance.

    Returns:
        Settings instance.
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reload_settings(config_path: Optional[str] = None) -> Settings:
    """
    Reload settings from configuration.

    Args:
        config_path: Optional explicit path to config file.

    Returns:
        New Settings instance.
    """
    global _settings
    _settings = load_settings(config_path)
    return _settings
