from typing import Any, Dict, Optional


class BeaconError(Exception):
    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class ValidationError(BeaconError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("validation_error", message, details)


class DuplicateRequestError(BeaconError):
    def __init__(self, ref_id: str):
        super().__init__("duplicate_request", "Duplicate request.", {"refId": ref_id})


class UnknownReferenceError(BeaconError):
    def __init__(self, ref_id: str):
        super().__init__("unknown_reference", "Unknown beaconID", {"refId": ref_id})


class RpcError(BeaconError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("rpc_error", message, details)


class UnmappedUserError(BeaconError):
    def __init__(self, user_id: str):
        super().__init__(
            "unmapped_user",
            f"User {user_id} not found or not mapped to a gateway that can confirm payments.",
            {"userId": user_id},
        )
