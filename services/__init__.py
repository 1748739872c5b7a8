"""Services for the self-improvement loop."""

__all__ = ["SelfImprovementSystem"]


def __getattr__(name: str):
    if name == "SelfImprovementSystem":
        from services.self_improvement import SelfImprovementSystem

        return SelfImprovementSystem
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
