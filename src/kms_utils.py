# kms_utils.py
"""
Secrets in the Lambda environment may be plaintext or ENCRYPTED(<base64 ciphertext>).
Wrapped values were encrypted under the context {"app": "reservation-middleware"}.

    secret = kms_decrypt_wrapped(os.environ["STRIPE_SECRET_KEY"])
    logger.info(f"[Stripe] using key {mask_secret(secret)}")
"""

import os
import base64
import binascii
import logging

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

ENCRYPTION_CONTEXT = {"app": "reservation-middleware"}
_PREFIX = "ENCRYPTED("

_kms_client = None


def _get_kms_client():
    """One KMS client per container."""
    global _kms_client
    if _kms_client is None:
        region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "us-east-1"
        _kms_client = boto3.client("kms", region_name=region)
    return _kms_client


def is_wrapped(value) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX) and value.endswith(")")


def kms_decrypt_wrapped(value: str) -> str:
    """
    Unwrap an ENCRYPTED(...) value. Anything else is returned as-is.

    Raises ValueError when the ciphertext is malformed or KMS refuses it.
    """
    if not value:
        return ""
    if not is_wrapped(value):
        return value

    try:
        ciphertext = base64.b64decode(value[len(_PREFIX):-1], validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 ciphertext: {e}")

    try:
        response = _get_kms_client().decrypt(CiphertextBlob=ciphertext, EncryptionContext=ENCRYPTION_CONTEXT)
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        logger.error(f"[KMS] decrypt failed: {code}")
        raise ValueError(f"KMS decrypt failed: {code}")

    return response["Plaintext"].decode("utf-8")


def mask_secret(secret: str, keep: int = 4) -> str:
    """sk_test_abcd -> ********abcd"""
    if not secret:
        return ""
    if len(secret) <= keep:
        return "*" * len(secret)
    return "*" * (len(secret) - keep) + secret[-keep:]
