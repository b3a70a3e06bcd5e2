"""S3-compatible transport for note records."""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from notesync.errors import AuthenticationError, RecordNotFoundError, TransportError
from notesync.models import CipherBundle, ManifestEntry, RemoteNoteRecord, ensure_utc, parse_datetime
from services.remote_storage.transport import (
    RECORD_PREFIX,
    RemoteTransport,
    damaged_entry,
    decode_record,
    encode_record,
    note_id_from_key,
    record_key,
)

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    "401", "403", "AccessDenied", "InvalidAccessKeyId",
    "SignatureDoesNotMatch", "ExpiredToken", "InvalidToken",
}
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}

VERSION_METADATA_KEY = "sync-version"
MODIFIED_METADATA_KEY = "modified-date"


class S3Transport(RemoteTransport):
    """Stores note records as objects in an S3-compatible bucket.

    Works against AWS S3 or any S3 gateway, for example ``rclone serve s3``
    in front of a OneDrive or Google Drive remote.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        prefix: str = RECORD_PREFIX,
        provider_name: str = "s3",
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0
    ):
        """
        Initialize S3 transport.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            access_key_id: Access key ID (optional, uses default credentials if not provided)
            secret_access_key: Secret access key (optional)
            endpoint_url: Custom endpoint for S3-compatible gateways
            prefix: Key prefix under which records are stored
            provider_name: Name used in logs and status
            connect_timeout: Socket connect timeout in seconds
            read_timeout: Socket read timeout in seconds
        """
        self.bucket_name = bucket_name
        self.region = region
        self.prefix = prefix
        self.provider_name = provider_name
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._endpoint_url = endpoint_url
        self._config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": 1},
        )
        self.s3_client = None
        self._authenticated = False

    def _build_client(self):
        kwargs = {"region_name": self.region, "config": self._config}
        if self._endpoint_url:
            kwargs["endpoint_url"] = self._endpoint_url
        if self._access_key_id and self._secret_access_key:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        # Otherwise use default credentials (from environment or IAM role)
        return boto3.client("s3", **kwargs)

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated and self.s3_client is not None

    async def authenticate(self) -> bool:
        try:
            if self.s3_client is None:
                self.s3_client = self._build_client()
            await asyncio.to_thread(self.s3_client.head_bucket, Bucket=self.bucket_name)
        except ClientError as e:
            logger.error(f"Authentication with bucket {self.bucket_name} failed: {e}")
            self._authenticated = False
            if self._error_code(e) in AUTH_ERROR_CODES:
                return False
            raise TransportError(f"Cannot reach bucket {self.bucket_name}: {e}")
        except BotoCoreError as e:
            self._authenticated = False
            raise TransportError(f"Cannot reach bucket {self.bucket_name}: {e}")

        self._authenticated = True
        logger.info(f"Connected to bucket {self.bucket_name} ({self.provider_name})")
        return True

    async def sign_out(self) -> None:
        self._authenticated = False
        self.close()

    def close(self) -> None:
        if self.s3_client is not None:
            try:
                self.s3_client.close()
            except AttributeError:
                pass
            self.s3_client = None

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get("Error", {}).get("Code", ""))

    def _translate(self, error: Exception, action: str, note_id: Optional[str] = None) -> Exception:
        """Map a botocore error onto the sync error taxonomy."""
        if isinstance(error, ClientError):
            code = self._error_code(error)
            if code in AUTH_ERROR_CODES:
                self._authenticated = False
                return AuthenticationError(f"Credentials rejected while trying to {action}: {code}", note_id=note_id)
            if code in NOT_FOUND_CODES:
                return RecordNotFoundError(f"Remote record {note_id} not found", note_id=note_id)
        return TransportError(f"Failed to {action}: {error}", note_id=note_id)

    def _require_client(self):
        if not self.is_authenticated:
            raise AuthenticationError(f"Not connected to {self.provider_name}")
        return self.s3_client

    async def list_manifest(self) -> List[ManifestEntry]:
        client = self._require_client()
        try:
            return await asyncio.to_thread(self._list_manifest, client)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, "list remote records")

    def _list_manifest(self, client) -> List[ManifestEntry]:
        entries = []
        paginator = client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self.prefix):
            for obj in page.get("Contents", []):
                note_id = note_id_from_key(obj["Key"], self.prefix)
                if note_id is None:
                    continue
                try:
                    head = client.head_object(Bucket=self.bucket_name, Key=obj["Key"])
                except ClientError as e:
                    if self._error_code(e) in NOT_FOUND_CODES:
                        # Deleted between listing and reading
                        continue
                    raise
                metadata = head.get("Metadata", {})
                try:
                    sync_version = int(metadata[VERSION_METADATA_KEY])
                except (KeyError, ValueError) as e:
                    logger.warning(f"Object {obj['Key']} has no usable version metadata: {e}")
                    entries.append(damaged_entry(note_id, f"Missing or invalid version metadata: {e}"))
                    continue
                entries.append(ManifestEntry(
                    id=note_id,
                    sync_version=sync_version,
                    modified_date=parse_datetime(metadata.get(MODIFIED_METADATA_KEY)) or ensure_utc(obj["LastModified"]),
                ))
        return entries

    async def get_payload(self, note_id: str) -> RemoteNoteRecord:
        client = self._require_client()
        try:
            response = await asyncio.to_thread(
                client.get_object,
                Bucket=self.bucket_name,
                Key=record_key(note_id, self.prefix)
            )
            data = await asyncio.to_thread(response["Body"].read)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, f"download record {note_id}", note_id)
        return decode_record(data)

    async def put_record(
        self,
        note_id: str,
        sync_version: int,
        modified_date: datetime,
        payload: CipherBundle
    ) -> None:
        client = self._require_client()
        key = record_key(note_id, self.prefix)
        body = encode_record(RemoteNoteRecord(
            id=note_id,
            sync_version=sync_version,
            modified_date=modified_date,
            payload=payload,
        ))

        try:
            # A single PUT replaces the object atomically; version metadata and body travel together
            await asyncio.to_thread(
                client.put_object,
                Bucket=self.bucket_name,
                Key=key,
                Body=body,
                ContentType="application/json",
                Metadata={
                    VERSION_METADATA_KEY: str(sync_version),
                    MODIFIED_METADATA_KEY: ensure_utc(modified_date).isoformat(),
                }
            )
            head = await asyncio.to_thread(client.head_object, Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, f"upload record {note_id}", note_id)

        stored_version = head.get("Metadata", {}).get(VERSION_METADATA_KEY)
        if stored_version != str(sync_version):
            raise TransportError(
                f"Verification failed for record {note_id}: expected version {sync_version}, found {stored_version}",
                note_id=note_id
            )
        logger.debug(f"Stored remote record {key} at version {sync_version}")

    async def delete_record(self, note_id: str) -> None:
        client = self._require_client()
        try:
            await asyncio.to_thread(
                client.delete_object,
                Bucket=self.bucket_name,
                Key=record_key(note_id, self.prefix)
            )
        except (ClientError, BotoCoreError) as e:
            error = self._translate(e, f"delete record {note_id}", note_id)
            if isinstance(error, RecordNotFoundError):
                return
            raise error
        logger.debug(f"Deleted remote record {note_id}")
