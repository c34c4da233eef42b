from pathlib import Path
from typing import Optional

import boto3
import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from errors import ExternalServiceError, InvalidRequestError

logger = structlog.get_logger(__name__)

CHAT_FILES = "chat_files"
PDF_PAGES = "pdf_pages"
TRANSACTION_ATTACHMENTS = "transaction_attachments"


def get_s3_client(region: str):
    return boto3.client("s3", region_name=region)


class ObjectStorage:
    """
    Saves uploaded files to either S3 or a local folder and hands back a
    public URL. Local files are served by the functions app under /storage.
    """

    def __init__(
        self,
        bucket: Optional[str] = None,
        region: str = "us-east-1",
        local_root: str | Path = "storage",
        public_base_url: str = "http://localhost:8000",
        s3_client=None,
        http: Optional[httpx.Client] = None,
    ):
        self.bucket = bucket
        self.region = region
        self.local_root = Path(local_root)
        self.public_base_url = public_base_url.rstrip("/")
        self._s3 = s3_client
        self._http = http

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = get_s3_client(self.region)
        return self._s3

    @property
    def _local_prefix(self) -> str:
        return f"{self.public_base_url}/storage/"

    @property
    def _s3_prefix(self) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/"

    def _local_path(self, key: str) -> Path:
        root = self.local_root.resolve()
        path = (root / key).resolve()
        if not path.is_relative_to(root):
            raise InvalidRequestError(f"Path is outside storage: {key}")
        return path

    def public_url(self, folder: str, file_name: str) -> str:
        key = f"{folder}/{file_name}"
        if self.bucket:
            return self._s3_prefix + key
        return self._local_prefix + key

    def save_file(self, folder: str, file_name: str, data: bytes, content_type: str = "application/octet-stream") -> str:
        """
        Saves a file to either S3 or local disk and returns its public URL.
        """
        key = f"{folder}/{file_name}"
        if self.bucket:
            try:
                self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
            except (BotoCoreError, ClientError) as e:
                logger.error("s3_upload_failed", key=key, error=str(e))
                raise ExternalServiceError(f"S3 Upload Error: {e}") from e
        else:
            # Local fallback
            local_path = self._local_path(key)
            local_path.parent.mkdir(parents=True, exist_ok=True)
            local_path.write_bytes(data)

        logger.debug("file_saved", key=key, size=len(data))
        return self.public_url(folder, file_name)

    def load_file(self, url: str) -> bytes:
        """
        Loads a file by public URL, reading our own storage directly and
        fetching anything else over HTTP.
        """
        if not self.bucket and url.startswith(self._local_prefix):
            local_path = self._local_path(url[len(self._local_prefix):])
            if not local_path.exists():
                raise ExternalServiceError(f"File not found in storage: {url}")
            return local_path.read_bytes()

        if self.bucket and url.startswith(self._s3_prefix):
            key = url[len(self._s3_prefix):]
            try:
                obj = self.s3.get_object(Bucket=self.bucket, Key=key)
            except (BotoCoreError, ClientError) as e:
                raise ExternalServiceError(f"S3 Download Error: {e}") from e
            return obj["Body"].read()

        try:
            if self._http is not None:
                response = self._http.get(url)
            else:
                response = httpx.get(url, timeout=30.0, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"Failed to fetch {url}: {e}") from e
        return response.content
