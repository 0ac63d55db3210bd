"""Service modules"""
from .borrow_manager import BorrowManager
from .converter import Converter
from .debt_monitor import DebtMonitor
from .keeper import Keeper

__all__ = ["BorrowManager", "Converter", "DebtMonitor", "Keeper"]
