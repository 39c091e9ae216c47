"""
SANDLOOP — Script-driven coding agent.

The model never touches the workspace directly. It writes scripts,
the scripts run inside a disposable overlay, and only the net diff
ever reaches the real files.
"""

from sandloop.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
