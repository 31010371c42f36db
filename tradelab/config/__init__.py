from .settings import (
    BacktestSettings,
    ComparisonSettings,
    LoggingConfig,
    OptimizerSettings,
    Settings,
    WalkForwardSettings,
    get_settings,
    load_settings,
    reload_settings,
)

__all__ = [
    "BacktestSettings",
    "ComparisonSettings",
    "LoggingConfig",
    "OptimizerSettings",
    "Settings",
    "WalkForwardSettings",
    "get_settings",
    "load_settings",
    "reload_settings",
]
