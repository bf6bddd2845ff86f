"""
Custom exception hierarchy for chainpulse.

Each exception carries an exit code (used by the CLI) and a JSON error_code.
Workers catch these at their own boundary and log them; only StoreError is
allowed to escape a worker and bring the process down.

Exit code mapping:
  1 — ChainpulseError (generic)
  2 — TransientIOError (ledger / network unavailable)
  3 — DecodeError (malformed ledger event)
  4 — operator action errors (NotFoundError, AlreadyResolvedError)
  5 — ConfigError (missing/malformed config)
  6 — StoreError (canonical store failure, fatal)
  7 — pipeline-internal errors (stale scope, rule, sink)
"""


class ChainpulseError(Exception):
    """Base exception for all chainpulse errors."""

    exit_code: int = 1
    error_code: str = "unknown_error"

    def __init__(self, message: str, details: dict | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class TransientIOError(ChainpulseError):
    """Ledger node, sink or network temporarily unavailable. Retried with backoff."""

    exit_code = 2
    error_code = "transient_io"


class LedgerRPCError(TransientIOError):
    """Ledger node answered a JSON-RPC call with an error object."""

    error_code = "ledger_rpc_error"

    def __init__(self, message: str, code: int | None = None, **kwargs) -> None:
        super().__init__(message, details={"rpc_code": code})
        self.code = code


class DecodeError(ChainpulseError):
    """A raw ledger event could not be decoded. Skipped and counted."""

    exit_code = 3
    error_code = "decode_error"


class DuplicateKeyError(ChainpulseError):
    """Idempotency key already present. Treated as a no-op, never surfaced."""

    exit_code = 1
    error_code = "duplicate_key"


class OperatorActionError(ChainpulseError):
    """Operator action rejected by validation."""

    exit_code = 4
    error_code = "operator_action_error"


class NotFoundError(OperatorActionError):
    """Referenced record does not exist."""

    error_code = "not_found"


class AlreadyResolvedError(OperatorActionError):
    """Alert was already resolved by an operator."""

    error_code = "already_resolved"


class ConfigError(ChainpulseError):
    """Config file is missing or malformed."""

    exit_code = 5
    error_code = "config_error"


class ConfigMissingError(ConfigError):
    """Config file does not exist; run `chainpulse config init`."""

    error_code = "config_missing"


class ConfigInvalidError(ConfigError):
    """Config file exists but contains invalid TOML or invalid values."""

    error_code = "config_invalid"


class StoreError(ChainpulseError):
    """Canonical store operation failed. Fatal: the process must restart."""

    exit_code = 6
    error_code = "store_error"


class PipelineError(ChainpulseError):
    """Base for errors contained inside one pipeline worker."""

    exit_code = 7
    error_code = "pipeline_error"


class StaleScopeError(PipelineError):
    """A recompute result was older than the snapshot already cached."""

    error_code = "stale_scope"

    def __init__(self, scope: str, attempted: int, current: int) -> None:
        super().__init__(
            f"Discarded snapshot for {scope}: version {attempted} < cached {current}",
            details={"scope": scope, "attempted": attempted, "current": current},
        )
        self.scope = scope


class RuleEvaluationError(PipelineError):
    """A single alert rule raised while evaluating."""

    error_code = "rule_evaluation_error"


class SinkDispatchError(PipelineError):
    """Delivery to one alert sink failed or timed out."""

    error_code = "sink_dispatch_error"
