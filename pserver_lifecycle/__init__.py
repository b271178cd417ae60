"""Schedule- and presence-driven lifecycle control for game servers."""

__version__ = "0.1.0"
