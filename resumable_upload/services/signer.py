# services/signer.py
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Dict, Optional
from urllib.parse import quote

from ..models.upload_models import SignPartResult, TemporaryCredentials, UploadParameters

ALGORITHM = "AWS4-HMAC-SHA256"
SERVICE = "s3"
MAX_EXPIRES = 604800


def _hmac_sha256(key: bytes, message: str) -> bytes:
    return hmac.new(key, message.encode("utf-8"), hashlib.sha256).digest()


def _uri_encode(value: str, safe: str = "") -> str:
    # RFC 3986 unreserved characters stay as-is, everything else is %XX
    return quote(value, safe=safe + "-_.~")


def derive_signing_key(secret_access_key: str, date_stamp: str, region: str, service: str = SERVICE) -> bytes:
    k_date = _hmac_sha256(f"AWS4{secret_access_key}".encode("utf-8"), date_stamp)
    k_region = _hmac_sha256(k_date, region)
    k_service = _hmac_sha256(k_region, service)
    return _hmac_sha256(k_service, "aws4_request")


class AwsSignatureV4:
    """
    Presigned-URL signer (AWS Signature Version 4, query-string auth).

    Lets the client sign part uploads itself with temporary credentials
    instead of asking the backend for every part. Pure computation; no
    I/O happens here.
    """

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        region: str,
        bucket: str,
        session_token: Optional[str] = None,
        host: Optional[str] = None,
    ):
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.region = region
        self.bucket = bucket
        self.session_token = session_token
        self.host = host or f"{bucket}.s3.{region}.amazonaws.com"

    @classmethod
    def from_credentials(cls, credentials: TemporaryCredentials) -> "AwsSignatureV4":
        return cls(
            access_key_id=credentials.access_key_id,
            secret_access_key=credentials.secret_access_key,
            region=credentials.region,
            bucket=credentials.bucket,
            session_token=credentials.session_token,
        )

    def create_presigned_url(
        self,
        key: str,
        expires: int = 3600,
        upload_id: Optional[str] = None,
        part_number: Optional[int] = None,
        content_type: Optional[str] = None,
        method: str = "PUT",
        now: Optional[datetime] = None,
    ) -> UploadParameters:
        if not 1 <= expires <= MAX_EXPIRES:
            raise ValueError(f"expires must be between 1 and {MAX_EXPIRES} seconds")

        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        now = now.astimezone(timezone.utc)
        date_stamp = now.strftime("%Y%m%d")
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        credential_scope = f"{date_stamp}/{self.region}/{SERVICE}/aws4_request"

        # Leading slashes belong to the key: "/a" and "a" are different objects
        canonical_uri = "/" + _uri_encode(key, safe="/")

        query: Dict[str, str] = {
            "X-Amz-Algorithm": ALGORITHM,
            "X-Amz-Credential": f"{self.access_key_id}/{credential_scope}",
            "X-Amz-Date": amz_date,
            "X-Amz-Expires": str(expires),
            "X-Amz-SignedHeaders": "host",
        }
        if self.session_token:
            query["X-Amz-Security-Token"] = self.session_token
        if upload_id is not None:
            query["uploadId"] = upload_id
        if part_number is not None:
            query["partNumber"] = str(part_number)

        canonical_query = "&".join(
            f"{_uri_encode(k)}={_uri_encode(v)}" for k, v in sorted(query.items())
        )

        canonical_request = "\n".join([
            method.upper(),
            canonical_uri,
            canonical_query,
            f"host:{self.host}\n",
            "host",
            "UNSIGNED-PAYLOAD",
        ])

        string_to_sign = "\n".join([
            ALGORITHM,
            amz_date,
            credential_scope,
            hashlib.sha256(canonical_request.encode("utf-8")).hexdigest(),
        ])

        signing_key = derive_signing_key(self.secret_access_key, date_stamp, self.region)
        signature = hmac.new(signing_key, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        headers = {"Content-Type": content_type} if content_type else None

        return UploadParameters(
            method=method.upper(),
            url=f"https://{self.host}{canonical_uri}?{canonical_query}&X-Amz-Signature={signature}",
            headers=headers,
            expires=expires,
        )

    def create_presigned_part_url(
        self,
        key: str,
        upload_id: str,
        part_number: int,
        expires: int = 3600,
        now: Optional[datetime] = None,
    ) -> SignPartResult:
        params = self.create_presigned_url(
            key=key,
            expires=expires,
            upload_id=upload_id,
            part_number=part_number,
            now=now,
        )
        return SignPartResult(url=params.url, headers=params.headers, expires=expires)
