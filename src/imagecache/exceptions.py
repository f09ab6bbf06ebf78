"""Exceptions for the image cache manager."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Self, override

from kubernetes_asyncio.client import ApiException
from safir.datetime import format_datetime_for_logging
from safir.slack.blockkit import (
    SlackCodeBlock,
    SlackException,
    SlackMessage,
    SlackTextBlock,
    SlackTextField,
)
from safir.slack.sentry import SentryEventInfo

__all__ = [
    "AmbiguousPodMatchError",
    "ControllerTimeoutError",
    "ImageWorkError",
    "InvalidRequestError",
    "KubernetesError",
    "NoPodsMatchedError",
    "QueueShutdownError",
]


class QueueShutdownError(Exception):
    """The work queue is shut down and has no more items."""


class InvalidRequestError(SlackException):
    """An image work request is missing its owning image cache.

    This is a defect in the caller, not a data error, so it is never retried.
    """


class ControllerTimeoutError(SlackException):
    """Wraps `TimeoutError` with additional context and Slack support.

    Parameters
    ----------
    operation
        Operation that timed out.
    started_at
        Start time of the operation.
    failed_at
        Time at which the operation timed out.
    """

    def __init__(
        self, operation: str, *, started_at: datetime, failed_at: datetime
    ) -> None:
        self.started_at = started_at
        elapsed = failed_at - started_at
        msg = f"{operation} timed out after {elapsed.total_seconds()}s"
        super().__init__(msg, failed_at=failed_at)

    @override
    def to_slack(self) -> SlackMessage:
        """Format the exception as a Slack message.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting with
            `~safir.slack.webhook.SlackWebhookClient`.
        """
        started_at = format_datetime_for_logging(self.started_at)
        failed_at = format_datetime_for_logging(self.failed_at)
        return SlackMessage(
            message=str(self),
            fields=[
                SlackTextField(heading="Started at", text=started_at),
                SlackTextField(heading="Failed at", text=failed_at),
            ],
        )


class ImageWorkError(SlackException):
    """Jobs for an image cache could not be matched to their pods.

    Parameters
    ----------
    message
        Summary of error.
    job
        Name of the job whose pods were being examined.
    namespace
        Namespace of the job.
    """

    def __init__(self, message: str, *, job: str, namespace: str) -> None:
        super().__init__(message)
        self.job = job
        self.namespace = namespace

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        obj = f"Job {self.namespace}/{self.job}"
        message.blocks.append(SlackTextBlock(heading="Object", text=obj))
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        info.tags["job"] = self.job
        info.tags["namespace"] = self.namespace
        return info


class NoPodsMatchedError(ImageWorkError):
    """No pod was found for a job that should have exactly one.

    This is usually transient, since the pod for a newly-created job may not
    exist yet. The status refresh should be retried later.
    """

    def __init__(self, job: str, namespace: str) -> None:
        msg = f"No pods matched job {job}"
        super().__init__(msg, job=job, namespace=namespace)


class AmbiguousPodMatchError(ImageWorkError):
    """More than one pod was found for a job.

    Every pull or purge job runs exactly one pod, so this should never
    happen. No attempt is made to choose one of the pods.
    """

    def __init__(self, job: str, namespace: str, pods: list[str]) -> None:
        msg = f"More than one pod matched job {job}: {', '.join(pods)}"
        super().__init__(msg, job=job, namespace=namespace)
        self.pods = pods


class KubernetesError(SlackException):
    """An API call to Kubernetes failed.

    The string form starts with the error message returned by Kubernetes, so
    that callers matching on the API server's own message keep working, and
    then adds a summary of the operation that failed.

    Parameters
    ----------
    message
        Summary of error.
    namespace
        Namespace of object being acted on.
    name
        Name of object being acted on.
    kind
        Kind of object being acted on.
    status
        Status code of failure, if any.
    body
        Error message from Kubernetes, if any.
    """

    @classmethod
    def from_exception(
        cls,
        message: str,
        exc: ApiException,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
    ) -> Self:
        """Create an exception from a Kubernetes API exception.

        Parameters
        ----------
        message
            Brief explanation of what was being attempted.
        exc
            Kubernetes API exception.
        kind
            Kind of object being acted on.
        namespace
            Namespace of object being acted on.
        name
            Name of object being acted on.

        Returns
        -------
        KubernetesError
            Newly-created exception.
        """
        return cls(
            message,
            kind=kind,
            namespace=namespace,
            name=name,
            status=exc.status,
            body=_extract_api_message(exc),
        )

    def __init__(
        self,
        message: str,
        *,
        kind: str | None = None,
        namespace: str | None = None,
        name: str | None = None,
        status: int | None = None,
        body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.namespace = namespace
        self.name = name
        self.status = status
        self.body = body

    @override
    def __str__(self) -> str:
        if self.body:
            return f"{self.body}: {self._summary()}"
        return self._summary()

    @override
    def to_slack(self) -> SlackMessage:
        """Convert to a Slack message for Slack alerting.

        Returns
        -------
        safir.slack.blockkit.SlackMessage
            Slack message suitable for posting as an alert.
        """
        message = super().to_slack()
        message.message = self._summary()
        if self.status:
            field = SlackTextField(heading="Status", text=str(self.status))
            message.fields.append(field)
        if self.name:
            kind = f"{self.kind} " if self.kind else ""
            if self.namespace:
                obj = f"{kind}{self.namespace}/{self.name}"
            else:
                obj = f"{kind}{self.name}"
            message.blocks.append(SlackTextBlock(heading="Object", text=obj))
        if self.body:
            code = SlackCodeBlock(heading="Error", code=self.body)
            message.blocks.append(code)
        return message

    @override
    def to_sentry(self) -> SentryEventInfo:
        """Return a collection of Sentry event metadata about the exception.

        Returns
        -------
        safir.slack.sentry.SentryEventInfo
            Sentry event metadata for use with \
            `~safir.sentry.before_send_handler`
        """
        info = super().to_sentry()
        if self.status:
            info.tags["status"] = str(self.status)
        if self.name:
            info.tags["name"] = self.name
        if self.kind:
            info.tags["kind"] = self.kind
        if self.namespace:
            info.tags["namespace"] = self.namespace
        if self.body:
            info.attachments["body"] = self.body
        return info

    def _summary(self) -> str:
        """Summarize the operation that failed in a single line."""
        result = self.message
        if self.name or self.kind or self.status:
            parts = []
            if self.name:
                kind = f"{self.kind} " if self.kind else ""
                if self.namespace:
                    parts.append(f"{kind}{self.namespace}/{self.name}")
                else:
                    parts.append(f"{kind}{self.name}")
            elif self.kind:
                parts.append(self.kind)
            if self.status:
                parts.append(f"status {self.status}")
            result += f" ({', '.join(parts)})"
        return result


def _extract_api_message(exc: ApiException) -> str | None:
    """Get the error message from a Kubernetes API exception.

    Kubernetes normally returns a ``Status`` object as the body of a failed
    request, whose ``message`` field is the human-readable error. Fall back
    on the raw body, and then on the HTTP reason, if that is missing.
    """
    if exc.body:
        try:
            status = json.loads(exc.body)
        except (TypeError, ValueError):
            return str(exc.body)
        if isinstance(status, dict) and status.get("message"):
            return str(status["message"])
        return str(exc.body)
    return exc.reason
