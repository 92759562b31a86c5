from typing import Any, Dict, Optional


class PricingError(Exception):
    """Base error; `code` is the stable identifier sent to the model or the client."""

    code = "PRICING_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InputError(PricingError):
    code = "InputError"


class FilterSyntaxError(PricingError):
    code = "FilterSyntaxError"

    def __init__(self, message: str, hint: str = "", filter_text: Optional[str] = None):
        super().__init__(message)
        self.hint = hint
        self.filter_text = filter_text

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["hint"] = self.hint
        if self.filter_text is not None:
            payload["filter"] = self.filter_text
        return payload


class TransportError(PricingError):
    code = "TransportError"


class LLMError(TransportError):
    code = "LLMError"

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message, {"status_code": status_code, "detail": detail} if status_code else None)
        self.status_code = status_code
        self.detail = detail


class CatalogError(TransportError):
    code = "CatalogError"


class FetchError(CatalogError):
    code = "FetchError"

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None):
        details: Dict[str, Any] = {}
        if status_code is not None:
            details["status_code"] = status_code
        if url:
            details["url"] = url
        super().__init__(message, details)
        self.status_code = status_code
        self.url = url


class CatalogTimeoutError(CatalogError):
    code = "CatalogTimeoutError"


class ProtocolDecodeError(PricingError):
    code = "ProtocolDecodeError"
