from command_poller.models import RemoteError, RemoteErrorKind

RESOURCE_CONTENTION_FAULT = "ResourceContention"


def is_error_retryable(error: RemoteError) -> bool:
    """Generic verdict shared by every control-plane call"""
    if error.kind in (RemoteErrorKind.timeout, RemoteErrorKind.response):
        return True
    if error.kind == RemoteErrorKind.dispatch_failure:
        return error.is_timeout or error.is_io
    return False


def is_error_retryable_set_instance_health(error: RemoteError) -> bool:
    """Contention on the instance is transient for health updates only"""
    return (
        error.kind == RemoteErrorKind.service
        and error.fault_code == RESOURCE_CONTENTION_FAULT
    )
