# finsim/exceptions.py
class SettlementError(Exception):
    """Base class for trade settlement failures"""
    pass

class InvalidOrder(SettlementError):
    """Raised when quantity or price is not a positive amount"""
    pass

class InsufficientFunds(SettlementError):
    """Raised when a buy costs more than the available cash"""
    pass

class InsufficientShares(SettlementError):
    """Raised when a sell exceeds the held quantity"""
    pass

class AccountNotFound(SettlementError):
    """Raised when the account does not exist"""
    pass

class UnknownInstrument(SettlementError):
    """Raised when the instrument id or symbol does not exist"""
    pass

class PersistenceFailure(SettlementError):
    """Raised when the store fails mid-settlement; nothing was applied"""
    pass
