"""Error taxonomy for the ingestion pipeline and trend reads.

Every error carries a stable `code` that routers put into `ok: false`
payloads, so callers can branch on it without parsing messages.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for anticipated pipeline failures."""

    code = "pipeline_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class MissingCredentialError(PipelineError):
    """No usable stored token for an account."""

    code = "missing_credential"


class AccountNotFoundError(PipelineError):
    """No connected account matches the caller or hint."""

    code = "account_not_found"


class UpstreamError(PipelineError):
    """Graph API call failed."""

    code = "upstream_unknown"

    def __init__(
        self,
        message: str = "",
        status: Optional[int] = None,
        graph_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.status = status
        self.graph_code = graph_code


class UpstreamAuthExpired(UpstreamError):
    code = "upstream_auth_expired"


class UpstreamRateLimited(UpstreamError):
    code = "upstream_rate_limited"


class UpstreamUnsupportedMetric(UpstreamError):
    code = "upstream_unsupported_metric"


class UpstreamTransient(UpstreamError):
    code = "upstream_transient"


class UpstreamUnknown(UpstreamError):
    code = "upstream_unknown"


class PersistenceError(PipelineError):
    """A database write or read failed for a reason other than missing schema."""

    code = "persistence_error"


class SchemaMissingError(PersistenceError):
    """A table or column the pipeline needs does not exist.

    Fatal to the invocation: retrying cannot help until migrations run.
    """

    code = "schema_missing"

    def __init__(self, table: str, message: str = ""):
        super().__init__(message or f"missing table: {table}")
        self.table = table


def truncate_message(message: str, limit: int = 300) -> str:
    """Clip error text before it goes into a response body."""
    return message if len(message) <= limit else message[:limit]
