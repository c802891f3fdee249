"""core-patches: keep Gerrit review changes applied as patches on installed packages."""

__version__ = "0.4.0"
