"""Extension manager: catalogs, installation and loading of optional extension modules"""

__version__ = "0.1.0"
