"""Ralph loop: drive an AI coding agent through spec, plan and build phases."""

__version__ = "0.4.0"

__all__ = ["__version__"]
