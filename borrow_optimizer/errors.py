"""Error taxonomy. Every failure the engine raises carries a stable code."""
from __future__ import annotations


class ConverterError(Exception):
    """Base class for all conversion-engine errors."""

    code = "TC-0 unknown"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        message = f"{self.code}: {detail}" if detail else self.code
        super().__init__(message)


class ZeroAddress(ConverterError):
    code = "TC-1 zero address"


class PlatformAdapterNotFound(ConverterError):
    code = "TC-2 adapter not found"


class WrongHealthFactor(ConverterError):
    code = "TC-3 wrong health factor"


class ZeroPrice(ConverterError):
    code = "TC-4 zero price"


class PositionNotRegistered(ConverterError):
    code = "TC-11 position not registered"


class WrongLengths(ConverterError):
    code = "TC-12 wrong lengths"


class ConverterNotFound(ConverterError):
    code = "TC-25 converter not found"


class IncorrectValue(ConverterError):
    code = "TC-29 incorrect value"


class PlatformAdapterIsInUse(ConverterError):
    code = "TC-33 platform adapter is in use"


class DivisionByZero(ConverterError):
    code = "TC-34 division by zero"


class OnePlatformAdapterPerConverter(ConverterError):
    code = "TC-37 one platform adapter per conv"


class RepayToRebalanceNotAllowed(ConverterError):
    code = "TC-40 repay to rebalance not allowed"


class KeeperOnly(ConverterError):
    code = "TC-42 keeper only"


class BorrowManagerOnly(ConverterError):
    code = "TC-45 borrow manager only"


class AmountTooBig(ConverterError):
    code = "TC-50 amount too big"


class ZeroValueNotAllowed(ConverterError):
    code = "TC-56 zero not allowed"


class GovernanceOnly(ConverterError):
    code = "TC-9 governance only"


class VenueUnavailable(ConverterError):
    """The lending venue is paused or frozen; retry later."""

    code = "TC-60 venue unavailable"


class MigrationFailed(ConverterError):
    """A reconversion was rolled back; the original position is untouched."""

    code = "TC-61 migration failed"
