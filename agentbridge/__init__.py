"""File-system session registry for cooperating command-line agents."""

__version__ = "0.2.0"
__all__ = ["atomic", "manifest", "lock", "scope", "reconnect", "manager"]