"""Checklist API.

FastAPI backend for the checklist/inspection app and its web portal:
- Photo uploads to Google Drive with provenance in Firestore
- Expiring signed URLs for reading those photos
- Mercado Pago checkout and webhook-driven subscription entitlements
- Portal role management

Security: portal endpoints require Firebase Auth; photo reads require a
signed capability.
"""

__version__ = "1.0.0"
