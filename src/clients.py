"""
REST API client for Google Compute Engine (v1 API).
"""

import logging
import time
from typing import Dict, List, Optional

import google.auth
import requests
from google.auth.transport.requests import AuthorizedSession

from models import name_from_self_link

logger = logging.getLogger(__name__)

API_BASE = "https://compute.googleapis.com/compute/v1"
SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]

SNAPSHOT_TIMEOUT_SECONDS = 10 * 60
METADATA_TIMEOUT_SECONDS = 60


class ComputeApiError(RuntimeError):
    """A Compute Engine call failed with a non-retryable or final status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def build_labels_filter(labels: Dict[str, str]) -> str:
    """Build an aggregatedList filter matching every given label."""
    return " ".join(f"(labels.{k} eq {v})" for k, v in labels.items())


def merge_metadata_items(winner: List[Dict], loser: Optional[List[Dict]]) -> List[Dict]:
    """Merge metadata items; keys present in ``winner`` take precedence."""
    merged = list(winner)
    keys = {item["key"] for item in winner}
    for item in loser or []:
        if item["key"] not in keys:
            merged.append(item)
    return merged


def _not_deprecated(item: Dict) -> bool:
    state = (item.get("deprecated") or {}).get("state", "")
    return state.upper() != "DEPRECATED"


class ComputeRestClient:
    """REST client for the Compute Engine v1 API, scoped to one project."""

    RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}

    def __init__(
        self,
        project_id: str,
        credentials_file: Optional[str] = None,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 5.0,
    ):
        """
        Initialize the Compute Engine REST client.

        Args:
            project_id: GCP project ID
            credentials_file: Optional service account key file; application
                default credentials are used when omitted
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff

        Raises:
            google.auth.exceptions.DefaultCredentialsError: If credentials
                cannot be loaded
        """
        self.project_id = project_id
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        if credentials_file:
            creds, _ = google.auth.load_credentials_from_file(
                credentials_file, scopes=SCOPES
            )
        else:
            creds, _ = google.auth.default(scopes=SCOPES)
        self.session = AuthorizedSession(creds)

    def _url(self, path: str) -> str:
        """Construct full API URL from a project-relative path."""
        return f"{API_BASE}/projects/{self.project_id}/{path.lstrip('/')}"

    def _request_with_retry(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method (GET, POST, DELETE)
            url: Request URL
            **kwargs: Additional request parameters

        Returns:
            The final response

        Raises:
            ComputeApiError: If max retries exceeded
        """
        last_error = None

        for attempt in range(self.max_retries + 1):
            try:
                resp = self.session.request(
                    method.upper(), url, timeout=self.timeout_s, **kwargs
                )
            except requests.exceptions.RequestException as e:
                delay = self._calculate_delay(attempt)
                logger.warning(
                    f"Request error: {e}, attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = str(e)
                time.sleep(delay)
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                delay = self._calculate_delay(attempt, resp)
                error_info = self._error_message(resp)
                logger.warning(
                    f"Retryable error {resp.status_code} ({error_info}), attempt {attempt + 1}/{self.max_retries + 1}, waiting {delay:.1f}s..."
                )
                last_error = f"HTTP {resp.status_code}: {error_info or resp.text[:200]}"
                time.sleep(delay)
                continue

            return resp

        raise ComputeApiError(f"Max retries exceeded. Last error: {last_error}")

    @staticmethod
    def _error_message(resp) -> str:
        try:
            return resp.json().get("error", {}).get("message", "")
        except ValueError:
            return ""

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

        delay = self.base_delay * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 180.0)

    def _call(self, method: str, path: str, ok=(200,), **kwargs) -> Dict:
        resp = self._request_with_retry(method, self._url(path), **kwargs)
        if resp.status_code not in ok:
            raise ComputeApiError(
                f"{method} {path} failed ({resp.status_code}): {resp.text}",
                status_code=resp.status_code,
            )
        return resp.json() if resp.content else {}

    def _list(self, path: str, params: Optional[Dict] = None) -> List[Dict]:
        items: List[Dict] = []
        params = dict(params or {})
        while True:
            data = self._call("GET", path, params=params)
            items.extend(data.get("items", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items
            params["pageToken"] = page_token

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def insert_instance(
        self, body: Dict, zone: str, template: Optional[str] = None
    ) -> Dict:
        """
        Insert an instance. Returns as soon as the operation is accepted.

        Args:
            body: Instance resource
            zone: Zone name or self link
            template: Optional source instance template

        Returns:
            Zone operation resource

        Raises:
            ComputeApiError: If the insert is rejected
        """
        zone = name_from_self_link(zone)
        params = {"sourceInstanceTemplate": template} if template else {}
        return self._call(
            "POST", f"zones/{zone}/instances", ok=(200, 202), json=body, params=params
        )

    def get_instance(self, zone: str, name: str) -> Optional[Dict]:
        """
        Get an instance.

        Returns:
            Instance resource, or None when the instance does not exist

        Raises:
            ComputeApiError: For errors other than 404
        """
        zone = name_from_self_link(zone)
        try:
            return self._call("GET", f"zones/{zone}/instances/{name}")
        except ComputeApiError as e:
            if e.status_code == 404:
                return None
            raise

    def list_instances_by_label(self, labels: Dict[str, str]) -> List[Dict]:
        """
        Return every instance in the project carrying all given labels.

        Args:
            labels: Label key/value pairs

        Returns:
            Instance resources across all zones
        """
        instances: List[Dict] = []
        params = {"filter": build_labels_filter(labels)}
        while True:
            data = self._call("GET", "aggregated/instances", params=params)
            for scoped in (data.get("items") or {}).values():
                instances.extend(scoped.get("instances", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return instances
            params["pageToken"] = page_token

    def terminate_instance_async(self, zone: str, name: str) -> Dict:
        """Issue an instance delete without waiting for it to complete."""
        zone = name_from_self_link(zone)
        return self._call(
            "DELETE", f"zones/{zone}/instances/{name}", ok=(200, 202)
        )

    def append_instance_metadata(
        self, zone: str, name: str, items: List[Dict]
    ) -> Optional[Dict]:
        """
        Append metadata items to an instance, overwriting items with the
        same key. Blocks until the setMetadata operation completes.

        Returns:
            The operation error, or None on success
        """
        zone = name_from_self_link(zone)
        instance = self.get_instance(zone, name)
        if instance is None:
            raise ComputeApiError(f"Instance {name} not found in {zone}", status_code=404)
        metadata = instance.get("metadata", {})
        body = {
            "fingerprint": metadata.get("fingerprint"),
            "items": merge_metadata_items(items, metadata.get("items")),
        }
        op = self._call(
            "POST", f"zones/{zone}/instances/{name}/setMetadata", ok=(200, 202), json=body
        )
        return self.wait_for_operation(op, timeout=METADATA_TIMEOUT_SECONDS)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def get_operation(self, op: Dict) -> Dict:
        """Refresh a zone, region or global operation."""
        name = op["name"]
        if op.get("zone"):
            return self._call("GET", f"zones/{name_from_self_link(op['zone'])}/operations/{name}")
        if op.get("region"):
            return self._call(
                "GET", f"regions/{name_from_self_link(op['region'])}/operations/{name}"
            )
        return self._call("GET", f"global/operations/{name}")

    def wait_for_operation(
        self, op: Dict, timeout: float, poll_interval: float = 5.0
    ) -> Optional[Dict]:
        """
        Block until an operation is DONE.

        Args:
            op: Operation resource as returned by a mutating call
            timeout: Maximum time to wait (seconds)
            poll_interval: Time between polls (seconds)

        Returns:
            The operation's error, or None if it succeeded

        Raises:
            TimeoutError: If the operation is not done within ``timeout``
        """
        if not op or not op.get("name"):
            raise ValueError("Operation name can not be empty")

        start = time.time()
        while op.get("status") != "DONE":
            if time.time() - start >= timeout:
                raise TimeoutError(
                    f"Timed out after {timeout}s waiting for operation {op['name']}"
                )
            time.sleep(poll_interval)
            logger.debug(f"Waiting for operation {op['name']} to complete...")
            op = self.get_operation(op)
        return op.get("error")

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def create_snapshot(self, zone: str, name: str) -> None:
        """
        Snapshot every disk attached to an instance. Blocks until done.

        Raises:
            ComputeApiError: If the instance is gone or a snapshot fails
        """
        zone = name_from_self_link(zone)
        instance = self.get_instance(zone, name)
        if instance is None:
            raise ComputeApiError(f"Instance {name} not found in {zone}", status_code=404)
        for disk in instance.get("disks", []):
            self.create_snapshot_for_disk(zone, name_from_self_link(disk["source"]))

    def create_snapshot_for_disk(self, zone: str, disk: str) -> None:
        op = self._call(
            "POST",
            f"zones/{zone}/disks/{disk}/createSnapshot",
            ok=(200, 202),
            json={"name": disk},
        )
        error = self.wait_for_operation(op, timeout=SNAPSHOT_TIMEOUT_SECONDS)
        if error:
            raise ComputeApiError(f"Snapshot of disk {disk} failed: {error}")

    def get_snapshot(self, name: str) -> Optional[Dict]:
        try:
            return self._call("GET", f"global/snapshots/{name}")
        except ComputeApiError as e:
            if e.status_code == 404:
                return None
            raise

    def delete_snapshot(self, name: str) -> Dict:
        """Delete a snapshot. Does not block."""
        return self._call("DELETE", f"global/snapshots/{name}", ok=(200, 202))

    # ------------------------------------------------------------------
    # Read-only listings
    # ------------------------------------------------------------------

    def list_regions(self) -> List[Dict]:
        regions = [r for r in self._list("regions") if _not_deprecated(r)]
        return sorted(regions, key=lambda r: r["name"])

    def list_zones(self, region: str) -> List[Dict]:
        region = name_from_self_link(region)
        zones = [
            z
            for z in self._list("zones")
            if name_from_self_link(z.get("region", "")) == region
        ]
        return sorted(zones, key=lambda z: z["name"])

    def list_machine_types(self, zone: str) -> List[Dict]:
        zone = name_from_self_link(zone)
        types = [m for m in self._list(f"zones/{zone}/machineTypes") if _not_deprecated(m)]
        return sorted(types, key=lambda m: m["name"])

    def list_images(self, project_id: Optional[str] = None) -> List[Dict]:
        url = f"{API_BASE}/projects/{project_id or self.project_id}/global/images"
        resp = self._request_with_retry("GET", url)
        if resp.status_code != 200:
            raise ComputeApiError(
                f"List images failed ({resp.status_code}): {resp.text}",
                status_code=resp.status_code,
            )
        images = [i for i in resp.json().get("items", []) if _not_deprecated(i)]
        return sorted(images, key=lambda i: i["name"])

    def list_networks(self) -> List[Dict]:
        return self._list("global/networks")

    def list_subnetworks(self, network_self_link: str, region: str) -> List[Dict]:
        region = name_from_self_link(region)
        subnets = [
            s
            for s in self._list(f"regions/{region}/subnetworks")
            if s.get("network") == network_self_link
        ]
        return sorted(subnets, key=lambda s: s["name"])

    def list_templates(self) -> List[Dict]:
        return sorted(self._list("global/instanceTemplates"), key=lambda t: t["name"])

    def get_template(self, name: str) -> Dict:
        return self._call("GET", f"global/instanceTemplates/{name_from_self_link(name)}")
