"""Guild activity loot and participation tracker."""

__version__ = "0.3.0"
