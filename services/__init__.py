"""Orchestration stages and the cycle that runs them."""

__all__ = ["HealthOrchestrator"]


def __getattr__(name: str):
    if name == "HealthOrchestrator":
        from services.orchestrator import HealthOrchestrator

        return HealthOrchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
