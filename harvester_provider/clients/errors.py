from kubernetes.client.exceptions import ApiException  # type: ignore[import-untyped]
from urllib3.exceptions import HTTPError as Urllib3HTTPError


class HarvesterError(RuntimeError):
    """Typed outcome of a failed call against the Harvester API."""

    reason = "ProviderError"
    permanent = False
    transient = False

    def __init__(
        self,
        *,
        operation: str,
        resource: str,
        detail: str,
        status_code: int | None = None,
    ):
        self.operation = operation
        self.resource = resource
        self.detail = detail
        self.status_code = status_code
        super().__init__(f"{operation} {resource} failed ({self.reason}): {detail}")


class AlreadyExists(HarvesterError):
    reason = "AlreadyExists"


class NotFound(HarvesterError):
    reason = "NotFound"


class Unauthorized(HarvesterError):
    reason = "Unauthorized"
    permanent = True


class InvalidSpec(HarvesterError):
    reason = "InvalidSpec"
    permanent = True


class Unavailable(HarvesterError):
    reason = "Unavailable"
    transient = True


_STATUS_ERRORS: dict[int, type[HarvesterError]] = {
    400: InvalidSpec,
    401: Unauthorized,
    403: Unauthorized,
    404: NotFound,
    409: AlreadyExists,
    422: InvalidSpec,
}


def _api_detail(exc: ApiException) -> str:
    body = (exc.body or "").strip() if isinstance(exc.body, str) else ""
    if body:
        return f"HTTP {exc.status}: {body[:240]}"
    return f"HTTP {exc.status}: {exc.reason or 'no reason given'}"


# Connection-level failures raised below the kubernetes client.
CONNECTION_ERRORS = (Urllib3HTTPError, OSError)


def translate_api_error(
    exc: ApiException | Urllib3HTTPError | OSError, operation: str, resource: str
) -> HarvesterError:
    if isinstance(exc, ApiException):
        error_cls = _STATUS_ERRORS.get(exc.status or 0, Unavailable)
        return error_cls(
            operation=operation,
            resource=resource,
            detail=_api_detail(exc),
            status_code=exc.status,
        )
    return Unavailable(operation=operation, resource=resource, detail=str(exc))
