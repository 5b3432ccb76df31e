"""
Error taxonomy for the ingestion and scoring pipeline.

Retryable conditions (endpoint, window, persistence) are distinguished from
per-record / per-rule conditions that are isolated and never abort a window
or a whole event's scoring. Nothing here is meant to crash the process:
listeners translate endpoint/window errors into a Backoff state and the
dispatch queue translates handler errors into retries or dead-letters.
"""

from typing import Optional


class PipelineError(Exception):
    """Root of every error raised by the pipeline."""


class ConfigError(ValueError):
    """Invalid or missing configuration key."""


class EndpointUnavailable(PipelineError):
    """
    A network call to a single endpoint failed or timed out.

    Retryable: the caller reports the failure to the health registry and
    fails over to the next healthy endpoint.
    """

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"endpoint {url} unavailable: {reason}")
        self.url = url
        self.reason = reason


class JsonRpcError(EndpointUnavailable):
    """The endpoint answered with a JSON-RPC error object."""

    def __init__(self, url: str, code: Optional[int], message: str) -> None:
        super().__init__(url, f"json-rpc error {code}: {message}")
        self.code = code
        self.rpc_message = message


class NoHealthyEndpoint(PipelineError):
    """Every endpoint configured for a source is currently unhealthy."""

    def __init__(self, source_id: str) -> None:
        super().__init__(f"no healthy endpoint for source {source_id}")
        self.source_id = source_id


class WindowFetchFailed(PipelineError):
    """A position window could not be fetched or processed; the cursor stays put."""

    def __init__(self, source_id: str, subscription_id: str, start: int, end: int, reason: str) -> None:
        super().__init__(
            f"window [{start}, {end}] failed for {source_id}/{subscription_id}: {reason}"
        )
        self.source_id = source_id
        self.subscription_id = subscription_id
        self.start = start
        self.end = end
        self.reason = reason


class CanonicalizationSkipped(PipelineError):
    """A raw record is malformed or unrecognized and is dropped."""


class DuplicateEvent(PipelineError):
    """An event identity was already seen inside the dedup window."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"duplicate event {event_id}")
        self.event_id = event_id


class RuleEvaluationError(PipelineError):
    """A single scoring rule raised while evaluating an event."""

    def __init__(self, rule_id: str, cause: BaseException) -> None:
        super().__init__(f"rule {rule_id} failed: {cause}")
        self.rule_id = rule_id
        self.cause = cause


class LookupUnavailable(PipelineError):
    """The sanctions/PEP lookup collaborator could not answer."""

    def __init__(self, identifier: str, reason: str) -> None:
        super().__init__(f"lookup unavailable for {identifier}: {reason}")
        self.identifier = identifier
        self.reason = reason


class ProcessingExhausted(PipelineError):
    """A queue job ran out of attempts and was dead-lettered."""

    def __init__(self, job_id: str, attempts: int, last_error: str) -> None:
        super().__init__(f"job {job_id} exhausted after {attempts} attempts: {last_error}")
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class PersistenceFailure(PipelineError):
    """
    The authoritative storage write failed.

    The only condition allowed to hold a job back indefinitely: the queue
    keeps retrying it with backoff instead of dead-lettering.
    """
