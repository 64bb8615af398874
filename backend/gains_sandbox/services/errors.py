"""Error kinds raised by the gains engine and the what-if pipeline."""


class GainsError(Exception):
    """Base class for gains sandbox errors."""


class ValidationError(GainsError):
    """Bad request input, rejected synchronously at session creation."""


class AdmissionError(GainsError):
    """User already has too many queued sessions."""


class SessionNotFoundError(GainsError):
    """No session with the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class ConfigurationError(GainsError):
    """Cost basis method cannot run with the inputs given (e.g. SPEC_ID without a lot order)."""


class ComputationError(GainsError):
    """Unexpected fault while matching lots, e.g. malformed trade data."""


class InsufficientLotsError(ComputationError):
    """A disposal exceeds the acquisitions available to cover it."""

    def __init__(self, trade_id: str, asset: str, unmatched):
        self.trade_id = trade_id
        self.asset = asset
        self.unmatched = unmatched
        super().__init__(
            f"Insufficient lots for disposal {trade_id}: "
            f"{unmatched} {asset} unmatched"
        )
