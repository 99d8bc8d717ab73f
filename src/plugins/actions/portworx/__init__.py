"""Portworx decommission cleanup plugin."""

from plugins.actions.portworx.plugin import PortworxDecommissionError, PortworxPlugin

__all__ = ["PortworxDecommissionError", "PortworxPlugin"]
