"""
SLOPPY identity: name, version and banner shared by the CLI and logs.
"""

__version__ = "0.4.0"
__codename__ = "SLOPPY"
__tagline__ = "Find the slop. Fix the slop. Keep the receipts."

BANNER = r"""
  ____  _     ___  ____  ______   __
 / ___|| |   / _ \|  _ \|  _ \ \ / /
 \___ \| |  | | | | |_) | |_) \ V /
  ___) | |__| |_| |  __/|  __/ | |
 |____/|_____\___/|_|   |_|    |_|
"""
