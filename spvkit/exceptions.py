from typing import Optional

from .constants import ErrorKind


class SPVKitError(Exception):
    '''The base of every error a host command can raise.

    Each subclass maps to exactly one `ErrorKind`, which is what hosts that do not want to deal
    with the class hierarchy should switch on.
    '''
    kind: ErrorKind = ErrorKind.UNHANDLED
    default_message = "Unexpected failure"

    def __init__(self, message: Optional[str]=None) -> None:
        super().__init__(message if message is not None else self.default_message)


class NoWallet(SPVKitError):
    kind = ErrorKind.NO_WALLET
    default_message = "No wallet is loaded"


class AlreadyExists(SPVKitError):
    kind = ErrorKind.ALREADY_EXISTS
    default_message = "A wallet already exists"


class NotFound(SPVKitError):
    kind = ErrorKind.NOT_FOUND
    default_message = "No wallet file found"


class Corrupt(SPVKitError):
    kind = ErrorKind.CORRUPT
    default_message = "The wallet file cannot be read"


class WrongPassword(SPVKitError):
    kind = ErrorKind.WRONG_PASSWORD
    default_message = "Incorrect password"


class NeedsPassword(SPVKitError):
    kind = ErrorKind.NEEDS_PASSWORD
    default_message = "The wallet is encrypted and a password is required"


class InvalidAddress(SPVKitError):
    kind = ErrorKind.INVALID_ADDRESS
    default_message = "Invalid address"


class InvalidAmount(SPVKitError):
    kind = ErrorKind.INVALID_AMOUNT
    default_message = "Invalid amount"


class InsufficientFunds(SPVKitError):
    kind = ErrorKind.INSUFFICIENT_FUNDS
    default_message = "Insufficient funds"


class NoPendingRequest(SPVKitError):
    kind = ErrorKind.NO_PENDING_REQUEST
    default_message = "There is no prepared transaction to commit"


class NetworkUnavailable(SPVKitError):
    kind = ErrorKind.NETWORK_UNAVAILABLE
    default_message = "The peer network is not running"


class Unhandled(SPVKitError):
    kind = ErrorKind.UNHANDLED


class WalletPersistenceError(Exception):
    '''Raised by the key-store when a mutation could not be written and was discarded.'''
    pass


class CheckpointError(Exception):
    '''A checkpoint stream could not be parsed.'''
    pass
