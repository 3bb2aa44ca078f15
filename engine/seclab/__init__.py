"""seclab — deploy and equip an Azure security lab."""

__version__ = "0.1.0"
