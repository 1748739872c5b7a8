"""Storage package utilities."""

__all__ = ["SelfImprovementStore", "StorageError", "probe"]


def __getattr__(name: str):
    if name == "SelfImprovementStore":
        from storage.self_improvement import SelfImprovementStore

        return SelfImprovementStore
    if name == "StorageError":
        from storage.self_improvement import StorageError

        return StorageError
    if name == "probe":
        from storage.diagnostics import probe

        return probe
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
