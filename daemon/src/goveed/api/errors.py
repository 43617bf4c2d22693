"""
API Errors - Map transport failures to HTTP responses
"""
from fastapi import HTTPException

from goveed.control.orchestrator import (
    DeviceNotFoundError,
    MissingApiKeyError,
    MissingSkuError,
)
from goveed.transport.lan import LanDeviceNotFoundError


def to_http_exception(error: Exception) -> HTTPException:
    """
    Translate a control-path failure into an HTTPException

    Unknown devices are 404, missing preconditions (API key, SKU) are 400
    and any other transport failure is 502.
    """
    if isinstance(error, (DeviceNotFoundError, LanDeviceNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (MissingApiKeyError, MissingSkuError)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=502, detail=str(error))
