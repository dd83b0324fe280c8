"""S3P (Smobilpay) signed REST gateway."""

from billing_engine.providers.s3p.client import S3PClient
from billing_engine.providers.s3p.gateway import Customer, S3PGateway
from billing_engine.providers.s3p.signature import S3PSigner, sign
from billing_engine.providers.s3p.status import normalize_s3p_status

__all__ = [
    "Customer",
    "S3PClient",
    "S3PGateway",
    "S3PSigner",
    "normalize_s3p_status",
    "sign",
]
