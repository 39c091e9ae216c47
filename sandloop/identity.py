"""SANDLOOP identity constants."""

__version__ = "0.4.0"
__codename__ = "SANDLOOP"
__tagline__ = "Scripts in the sandbox. Diffs in the repo."

BANNER = r"""
  ___   _   _  _ ___  _    ___   ___  ___
 / __| /_\ | \| |   \| |  / _ \ / _ \| _ \
 \__ \/ _ \| .` | |) | |_| (_) | (_) |  _/
 |___/_/ \_\_|\_|___/|____\___/ \___/|_|
"""
