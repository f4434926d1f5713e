"""Custom exception and warning classes for the panelmatch library."""

class PanelMatchError(Exception):
    """Base class for all custom exceptions in the panelmatch library."""
    pass

class PanelMatchConfigError(PanelMatchError):
    """Exception raised for invalid or contradictory configuration options."""
    pass

class PanelMatchDataError(PanelMatchError):
    """Exception raised for errors related to input data."""
    pass

class DuplicateKeyError(PanelMatchDataError):
    """Exception raised when (unit, time) pairs do not uniquely identify rows."""
    pass

class PanelMatchIdentifierError(PanelMatchDataError):
    """Exception raised for errors encoding or decoding unit identifiers."""
    pass

class InvalidIdentifierTypeError(PanelMatchIdentifierError):
    """Exception raised when the unit id column is not integer, integral numeric or string."""
    pass

class UnknownUnitIdError(PanelMatchIdentifierError, KeyError):
    """Exception raised when decoding an internal unit id that is not in the index map."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable
        return str(self.args[0]) if self.args else ""

class PanelMatchRefinementError(PanelMatchError):
    """Exception raised when a matched set cannot be refined."""
    pass

class NumericalInstabilityWarning(UserWarning):
    """Warning issued when a covariance matrix used for refinement is singular."""
    pass
