"""Device authentication."""

from fieldsync.auth.device import DeviceAuth, get_device_auth
from fieldsync.auth.passwords import hash_password, verify_password

__all__ = [
    "DeviceAuth",
    "get_device_auth",
    "hash_password",
    "verify_password",
]
