"""prism — reverse proxy that normalizes browser identity in WebDriver sessions."""

# Installs the TRACE-capable logger class before any module logger exists.
from prism import log as _log  # noqa: F401

__version__ = "1.0.0"
