"""Configuration package utilities."""

__all__ = ["ConfigController", "OrchestratorSettings"]


def __getattr__(name: str):
    if name == "ConfigController":
        from config.controller import ConfigController

        return ConfigController
    if name == "OrchestratorSettings":
        from config.settings import OrchestratorSettings

        return OrchestratorSettings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
