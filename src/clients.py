"""
REST API clients for Compute Engine (v1) and Cloud Storage (JSON API).
"""

import logging
import time
from typing import Dict, Iterable, List, Optional

import google.auth
from google.auth.transport.requests import AuthorizedSession
from google.auth.exceptions import DefaultCredentialsError

from errors import ApiError, SetupError

logger = logging.getLogger(__name__)

COMPUTE_API_BASE = "https://compute.googleapis.com/compute/v1"
STORAGE_API_BASE = "https://storage.googleapis.com/storage/v1"
STORAGE_UPLOAD_BASE = "https://storage.googleapis.com/upload/storage/v1"

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


def default_credentials():
    """
    Return (credentials, project) from application default credentials.

    Raises:
        SetupError: If no credentials are configured
    """
    try:
        return google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    except DefaultCredentialsError as e:
        raise SetupError(
            f"Could not load Google application default credentials: {e}. "
            "Run 'gcloud auth application-default login'"
        ) from e


def resolve_project_id() -> str:
    """
    Return the project of the application default credentials.

    Raises:
        SetupError: If no project can be determined
    """
    _, project = default_credentials()
    if not project:
        raise SetupError(
            "Could not determine the project ID; pass --project or run "
            "'gcloud config set project <PROJECT_ID>'"
        )
    return project


class GoogleRestClient:
    """Authorized REST session with retry for transient errors."""

    RETRYABLE_STATUS_CODES = {409, 429, 500, 502, 503, 504}

    def __init__(
        self,
        project_id: str,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 5.0,
        session: Optional[AuthorizedSession] = None,
    ):
        """
        Initialize the REST client.

        Args:
            project_id: GCP project ID
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            session: Optional pre-built authorized session
        """
        self.project_id = project_id
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        if session is None:
            creds, _ = default_credentials()
            session = AuthorizedSession(creds)
        self.session = session

    def _request_with_retry(
        self,
        method: str,
        url: str,
        retryable: Optional[Iterable[int]] = None,
        **kwargs,
    ):
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method (GET, POST, DELETE)
            url: Request URL
            retryable: Status codes to retry (defaults to RETRYABLE_STATUS_CODES)
            **kwargs: Additional request parameters

        Returns:
            The final response object

        Raises:
            ApiError: If max retries exceeded
        """
        retry_codes = (
            self.RETRYABLE_STATUS_CODES if retryable is None else set(retryable)
        )
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except Exception as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in retry_codes:
                delay = self._calculate_delay(attempt, resp)
                error_info = self._error_message(resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({error_info}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {error_info}"
                time.sleep(delay)
                continue

            return resp

        raise ApiError(
            f"{method.upper()} {url}", 0, f"Max retries exceeded. Last error: {last_error}"
        )

    def _calculate_delay(self, attempt: int, resp=None) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Args:
            attempt: Current attempt number
            resp: Optional response object (to check Retry-After header)

        Returns:
            Delay in seconds
        """
        if resp is not None and "Retry-After" in resp.headers:
            try:
                return float(resp.headers["Retry-After"])
            except ValueError:
                pass

        # Longer base delay for 409 (resource busy / operation queue full)
        base = self.base_delay
        if resp is not None and resp.status_code == 409:
            base = 15.0

        delay = base * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 180.0)

    @staticmethod
    def _error_message(resp) -> str:
        try:
            return resp.json().get("error", {}).get("message", "") or resp.text[:200]
        except ValueError:
            return resp.text[:200]

    def _call(
        self,
        operation: str,
        method: str,
        url: str,
        ok=(200,),
        retryable: Optional[Iterable[int]] = None,
        **kwargs,
    ) -> Dict:
        resp = self._request_with_retry(method, url, retryable=retryable, **kwargs)
        if resp.status_code not in ok:
            raise ApiError(operation, resp.status_code, self._error_message(resp))
        if not resp.content:
            return {}
        return resp.json()


class ComputeRestClient(GoogleRestClient):
    """REST client for the Compute Engine v1 API."""

    # 409 on insert means the name is taken, retrying will not help
    INSERT_RETRYABLE = {429, 500, 502, 503, 504}

    def _url(self, path: str) -> str:
        """Construct full API URL from path."""
        return f"{COMPUTE_API_BASE}/{path.lstrip('/')}"

    def _zone_path(self, zone: str, project: Optional[str] = None) -> str:
        return f"projects/{project or self.project_id}/zones/{zone}"

    def insert_instance(self, zone: str, body: Dict) -> Dict:
        """
        Submit an instance insert request.

        Returns:
            The zone operation resource
        """
        url = self._url(f"{self._zone_path(zone)}/instances")
        return self._call(
            "Insert instance", "POST", url, retryable=self.INSERT_RETRYABLE, json=body
        )

    def get_instance(self, zone: str, name: str) -> Dict:
        url = self._url(f"{self._zone_path(zone)}/instances/{name}")
        return self._call("Get instance", "GET", url)

    def delete_instance(self, zone: str, name: str) -> Dict:
        url = self._url(f"{self._zone_path(zone)}/instances/{name}")
        return self._call("Delete instance", "DELETE", url)

    def list_instances(self, zone: str, filter_expr: str = "") -> List[Dict]:
        """
        List instances in a zone, following pagination.

        Args:
            zone: Zone (e.g. 'us-central1-f')
            filter_expr: Compute API filter expression

        Returns:
            List of instance resources
        """
        url = self._url(f"{self._zone_path(zone)}/instances")
        return self._list(url, "List instances", filter_expr)

    def get_zone_operation(self, zone: str, operation: str) -> Dict:
        url = self._url(f"{self._zone_path(zone)}/operations/{operation}")
        return self._call("Get operation", "GET", url)

    def set_metadata(self, zone: str, name: str, metadata: Dict) -> Dict:
        """
        Replace instance metadata.

        Args:
            zone: Zone of the instance
            name: Instance name
            metadata: {"fingerprint": ..., "items": [...]}

        Returns:
            The zone operation resource
        """
        url = self._url(f"{self._zone_path(zone)}/instances/{name}/setMetadata")
        return self._call("Set metadata", "POST", url, json=metadata)

    def get_serial_port_output(
        self, zone: str, name: str, port: int = 1, start: int = 0
    ) -> Dict:
        """
        Read serial port output.

        Returns:
            Dict with 'contents' and 'next' (offset for the following read)
        """
        url = self._url(f"{self._zone_path(zone)}/instances/{name}/serialPort")
        params = {"port": port}
        if start:
            params["start"] = start
        return self._call("Get serial port output", "GET", url, params=params)

    def list_firewalls(self, project: Optional[str] = None) -> List[Dict]:
        url = self._url(f"projects/{project or self.project_id}/global/firewalls")
        return self._list(url, "List firewalls")

    def get_subnetwork(self, project: str, region: str, name: str) -> Dict:
        url = self._url(f"projects/{project}/regions/{region}/subnetworks/{name}")
        return self._call("Get subnetwork", "GET", url)

    def _list(self, url: str, operation: str, filter_expr: str = "") -> List[Dict]:
        items: List[Dict] = []
        page_token: Optional[str] = None

        while True:
            params = {}
            if filter_expr:
                params["filter"] = filter_expr
            if page_token:
                params["pageToken"] = page_token

            data = self._call(operation, "GET", url, params=params)
            items.extend(data.get("items", []))

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return items


class StorageRestClient(GoogleRestClient):
    """REST client for the Cloud Storage JSON API."""

    def insert_bucket(self, name: str, body: Optional[Dict] = None) -> Dict:
        """
        Create a bucket in the client project.

        Raises:
            ApiError: On failure; status 409 means the bucket already exists
        """
        payload = dict(body or {})
        payload["name"] = name
        return self._call(
            "Create bucket",
            "POST",
            f"{STORAGE_API_BASE}/b",
            retryable={429, 500, 502, 503, 504},
            params={"project": self.project_id},
            json=payload,
        )

    def upload_object(
        self,
        bucket: str,
        name: str,
        data: bytes,
        content_type: str = "application/octet-stream",
    ) -> Dict:
        """Upload ``data`` as gs://bucket/name with a single media request."""
        return self._call(
            "Upload object",
            "POST",
            f"{STORAGE_UPLOAD_BASE}/b/{bucket}/o",
            params={"uploadType": "media", "name": name},
            headers={"Content-Type": content_type},
            data=data,
        )
