"""
GradeLab - Dual Storage
Supabase Storage is the primary store: every upload lands there first and its
public URL is the one written to the database. When Appwrite is configured and
the bucket has a mapping, a copy is also written to Appwrite so files survive a
move away from Supabase.

Usage:
  storage = get_storage()
  result  = storage.upload("test-papers", "test-papers/<test>/<name>.pdf", data, "application/pdf")
  if result.error: ...
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, List, Tuple
from urllib.parse import unquote

from gradelab import config
from gradelab.exceptions import ConfigurationError, StorageError

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    data: Optional[dict]
    public_url: str
    error: Optional[str] = None
    appwrite_file_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DeleteResult:
    success: bool
    errors: List[dict] = field(default_factory=list)


def _appwrite_file_name(path: str, file_id: str) -> str:
    return f"{path.replace('/', '_')}_{file_id}"


def _result_id(result) -> str:
    # Older appwrite SDKs return plain dicts, newer ones return models.
    if isinstance(result, dict):
        return result.get("$id", "")
    return getattr(result, "id", "")


# ─────────────────────────────────────────────────────────────────────────────
# Supabase (primary)
# ─────────────────────────────────────────────────────────────────────────────

class SupabaseStorage:

    def __init__(self, url: str, key: str, client=None):
        self.url = url.rstrip("/")
        self.key = key
        self._client = client

    def _get_client(self):
        if self._client is None:
            if not self.url or not self.key:
                raise ConfigurationError("Supabase storage is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.")
            from supabase import create_client
            self._client = create_client(self.url, self.key)
            logger.info("✅ Supabase client ready: %s", self.url)
        return self._client

    def upload(self, bucket: str, path: str, data: bytes, content_type: str,
               upsert: bool = True, cache_control: str = "3600"):
        file_options = {
            "content-type": content_type,
            "cache-control": cache_control,
            "upsert": "true" if upsert else "false",
        }
        return self._get_client().storage.from_(bucket).upload(path, data, file_options)

    def public_url(self, bucket: str, path: str) -> str:
        url = self._get_client().storage.from_(bucket).get_public_url(path)
        return url.rstrip("?")

    def remove(self, bucket: str, paths: List[str]):
        return self._get_client().storage.from_(bucket).remove(paths)

    def download(self, bucket: str, path: str) -> bytes:
        return self._get_client().storage.from_(bucket).download(path)

    def list(self, bucket: str, prefix: str = "") -> list:
        return self._get_client().storage.from_(bucket).list(prefix)

    def ensure_bucket(self, bucket: str, public: bool = True,
                      file_size_limit: Optional[int] = None) -> bool:
        """Create the bucket if missing. Returns True when it was created."""
        client = self._get_client()
        existing = {getattr(b, "name", None) or getattr(b, "id", None) for b in client.storage.list_buckets()}
        if bucket in existing:
            return False
        options = {"public": public}
        if file_size_limit:
            options["file_size_limit"] = file_size_limit
        client.storage.create_bucket(bucket, options=options)
        logger.info("Created Supabase bucket: %s", bucket)
        return True


# ─────────────────────────────────────────────────────────────────────────────
# Appwrite (mirror)
# ─────────────────────────────────────────────────────────────────────────────

class AppwriteStorage:

    def __init__(self, endpoint: str, project_id: str, api_key: str = "", service=None):
        self.endpoint   = endpoint.rstrip("/")
        self.project_id = project_id
        self.api_key    = api_key
        self._service   = service

    def is_configured(self) -> bool:
        return bool(self.endpoint and self.project_id)

    def _get_service(self):
        if self._service is None:
            from appwrite.client import Client
            from appwrite.services.storage import Storage
            client = Client()
            (client
                .set_endpoint(self.endpoint)
                .set_project(self.project_id))
            if self.api_key:
                client.set_key(self.api_key)
            self._service = Storage(client)
            logger.info("✅ Appwrite storage ready: %s (%s)", self.endpoint, self.project_id)
        return self._service

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Upload a copy and return the new Appwrite file id."""
        from appwrite.id import ID
        from appwrite.input_file import InputFile

        file_id = ID.unique()
        file_name = _appwrite_file_name(path, file_id)
        result = self._get_service().create_file(
            bucket, file_id, InputFile.from_bytes(data, file_name, content_type)
        )
        return _result_id(result) or file_id

    def delete(self, bucket: str, file_id: str):
        return self._get_service().delete_file(bucket, file_id)

    def list_files(self, bucket: str) -> list:
        result = self._get_service().list_files(bucket)
        if isinstance(result, dict):
            return result.get("files", [])
        return list(getattr(result, "files", []))

    def view_url(self, bucket: str, file_id: str) -> str:
        return f"{self.endpoint}/storage/buckets/{bucket}/files/{file_id}/view?project={self.project_id}"

    def ensure_bucket(self, bucket: str, maximum_file_size: int,
                      allowed_extensions: Optional[List[str]] = None) -> bool:
        """Create the bucket. Returns False when it already exists (HTTP 409)."""
        from appwrite.exception import AppwriteException
        try:
            self._get_service().create_bucket(
                bucket_id=bucket,
                name=bucket,
                file_security=False,
                enabled=True,
                maximum_file_size=maximum_file_size,
                allowed_file_extensions=allowed_extensions or config.ALLOWED_FILE_EXTENSIONS,
                compression="gzip",
            )
        except AppwriteException as e:
            if getattr(e, "code", None) == 409:
                return False
            raise
        logger.info("Created Appwrite bucket: %s", bucket)
        return True


# ─────────────────────────────────────────────────────────────────────────────
# Dual storage
# ─────────────────────────────────────────────────────────────────────────────

class DualStorage:
    """
    Writes to Supabase first and mirrors to Appwrite when possible.
    An Appwrite failure never fails the upload; a Supabase failure does.
    """

    def __init__(self, supabase: SupabaseStorage, appwrite: Optional[AppwriteStorage] = None,
                 bucket_mapping: Optional[dict] = None):
        self.supabase = supabase
        self.appwrite = appwrite
        self.bucket_mapping = bucket_mapping if bucket_mapping is not None else config.BUCKET_MAPPING

    @classmethod
    def from_env(cls) -> "DualStorage":
        supabase = SupabaseStorage(config.SUPABASE_URL, config.SUPABASE_KEY)
        appwrite = None
        if config.appwrite_configured():
            appwrite = AppwriteStorage(
                config.APPWRITE_ENDPOINT, config.APPWRITE_PROJECT_ID, config.APPWRITE_API_KEY
            )
        return cls(supabase, appwrite)

    def _mirror_bucket(self, bucket: str) -> Optional[str]:
        if self.appwrite is None or not self.appwrite.is_configured():
            return None
        return self.bucket_mapping.get(bucket)

    def upload(self, bucket: str, path: str, data: bytes,
               content_type: str = "application/octet-stream",
               upsert: bool = True, cache_control: str = "3600") -> UploadResult:
        logger.info("Uploading %s/%s (%d bytes)", bucket, path, len(data))
        try:
            response = self.supabase.upload(bucket, path, data, content_type,
                                            upsert=upsert, cache_control=cache_control)
            public_url = self.supabase.public_url(bucket, path)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error("Supabase upload failed for %s/%s: %s", bucket, path, e)
            return UploadResult(data=None, public_url="", error=str(e))

        appwrite_file_id = None
        mirror = self._mirror_bucket(bucket)
        if mirror:
            try:
                appwrite_file_id = self.appwrite.upload(mirror, path, data, content_type)
                logger.info("Mirrored %s/%s to Appwrite bucket %s as %s", bucket, path, mirror, appwrite_file_id)
            except Exception as e:
                logger.warning("Appwrite mirror failed for %s/%s: %s", bucket, path, e)

        data_out = {"path": path, "bucket": bucket}
        full_path = getattr(response, "full_path", None)
        if full_path:
            data_out["full_path"] = full_path
        return UploadResult(
            data=data_out,
            public_url=public_url,
            appwrite_file_id=appwrite_file_id,
        )

    def delete(self, bucket: str, path: str, appwrite_file_id: Optional[str] = None) -> DeleteResult:
        errors = []
        try:
            self.supabase.remove(bucket, [path])
        except Exception as e:
            logger.warning("Supabase delete failed for %s/%s: %s", bucket, path, e)
            errors.append({"storage": "supabase", "error": str(e)})

        mirror = self._mirror_bucket(bucket)
        if mirror and appwrite_file_id:
            try:
                self.appwrite.delete(mirror, appwrite_file_id)
            except Exception as e:
                logger.warning("Appwrite delete failed for %s/%s: %s", mirror, appwrite_file_id, e)
                errors.append({"storage": "appwrite", "error": str(e)})

        return DeleteResult(success=not errors, errors=errors)

    def download(self, bucket: str, path: str) -> bytes:
        try:
            return self.supabase.download(bucket, path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to download {bucket}/{path}: {e}") from e

    def list_appwrite_files(self, bucket: str) -> list:
        mirror = self._mirror_bucket(bucket)
        if not mirror:
            return []
        return self.appwrite.list_files(mirror)

    def debug_info(self, bucket: str, path: str) -> dict:
        mirror = self._mirror_bucket(bucket)
        return {
            "bucket": bucket,
            "path": path,
            "supabase_url": self.supabase.url,
            "appwrite_configured": self.appwrite is not None and self.appwrite.is_configured(),
            "appwrite_bucket": mirror,
            "appwrite_file_name": _appwrite_file_name(path, "<id>") if mirror else None,
        }


def path_from_public_url(url: str, bucket: str) -> Optional[str]:
    """
    Extract the object path from a Supabase public URL:
    https://<ref>.supabase.co/storage/v1/object/public/<bucket>/<path>
    """
    if not url:
        return None
    marker = f"/object/public/{bucket}/"
    idx = url.find(marker)
    if idx == -1:
        return None
    return unquote(url[idx + len(marker):].split("?", 1)[0])


# ─────────────────────────────────────────────────────────
# Singleton (FastAPI dependency)
# ─────────────────────────────────────────────────────────

_storage_lock = threading.Lock()
_storage: Optional[DualStorage] = None


def get_storage() -> DualStorage:
    global _storage
    if _storage is not None:
        return _storage
    with _storage_lock:
        if _storage is None:
            _storage = DualStorage.from_env()
        return _storage


def delete_quietly(storage: DualStorage, bucket: str, path: Optional[str],
                   appwrite_file_id: Optional[str] = None) -> Tuple[bool, list]:
    """Delete a stored object, logging instead of raising. Used when the row goes regardless."""
    if not path:
        return True, []
    result = storage.delete(bucket, path, appwrite_file_id)
    if not result.success:
        logger.warning("Ignoring storage delete errors for %s/%s: %s", bucket, path, result.errors)
    return result.success, result.errors
