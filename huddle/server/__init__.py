from .runtime import RelayRuntime

__all__ = ["RelayRuntime"]
