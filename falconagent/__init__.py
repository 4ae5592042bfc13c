"""Host monitoring agent: collects Linux metrics and pushes them to a transfer service."""

__version__ = "5.1.2"