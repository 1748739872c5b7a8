"""Configuration package utilities."""

__all__ = ["ConfigController", "SelfImprovementConfig"]


def __getattr__(name: str):
    if name == "ConfigController":
        from config.controller import ConfigController

        return ConfigController
    if name == "SelfImprovementConfig":
        from config.settings import SelfImprovementConfig

        return SelfImprovementConfig
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
