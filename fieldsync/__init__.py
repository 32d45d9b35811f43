"""FieldSync - Device authentication and bulk survey synchronization.

Server side of the offline field-survey collection protocol:
- Long-lived, HMAC-signed device credentials bound to a (user, device) pair
- Credential issuance, verification, refresh and revocation
- Partner-scoped, exactly-once bulk upload of client-encrypted survey records
- Per-record outcomes with integrity and duplicate detection
"""

__version__ = "0.1.0"
__author__ = "FieldSync Contributors"
