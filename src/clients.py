"""
REST client for Azure Resource Manager.
"""

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import requests
from azure.identity import DefaultAzureCredential

from config import CLOUDS
from errors import ArmRequestError
from models import ServerTopology

logger = logging.getLogger(__name__)

SQL_API_VERSION = "2021-11-01"
RESOURCE_GRAPH_API_VERSION = "2021-03-01"
TAGS_API_VERSION = "2021-04-01"
METRICS_API_VERSION = "2018-01-01"
STORAGE_API_VERSION = "2023-01-01"
AUTHORIZATION_API_VERSION = "2022-04-01"
METRIC_ALERT_API_VERSION = "2018-03-01"
WEBTEST_API_VERSION = "2022-06-15"


class TokenRotator:
    """
    Caches a bearer token and rotates it on a fixed cadence.

    Copies can be polled for hours; rotating well inside the token lifetime
    keeps long waits from failing on stale credentials. Shared by all
    worker threads of a client.
    """

    def __init__(
        self,
        credential,
        scope: str,
        rotate_after: float = 1800.0,
        min_validity: float = 300.0,
        clock=time.time,
    ):
        self.credential = credential
        self.scope = scope
        self.rotate_after = rotate_after
        self.min_validity = min_validity
        self.clock = clock
        self._token: Optional[str] = None
        self._expires_on: float = 0.0
        self._fetched_at: float = 0.0
        self._lock = threading.Lock()
        self.rotations = 0

    def _due(self, now: float) -> bool:
        if self._token is None:
            return True
        if now - self._fetched_at >= self.rotate_after:
            return True
        return self._expires_on - now <= self.min_validity

    def token(self) -> str:
        with self._lock:
            now = self.clock()
            if self._due(now):
                access = self.credential.get_token(self.scope)
                if self._token is not None:
                    logger.debug(f"Rotating access token for {self.scope}")
                self._token = access.token
                self._expires_on = float(access.expires_on)
                self._fetched_at = now
                self.rotations += 1
            return self._token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None


class AzureRestClient:
    """REST client for the Azure Resource Manager endpoints the refresh uses."""

    RETRYABLE_STATUS_CODES = {409, 429, 500, 502, 503, 504}

    def __init__(
        self,
        cloud: str = "AzureCloud",
        credential=None,
        timeout_s: int = 60,
        max_retries: int = 5,
        base_delay: float = 5.0,
        token_rotation_seconds: float = 1800.0,
    ):
        """
        Initialize the ARM REST client.

        Args:
            cloud: Azure cloud name (AzureCloud or AzureUSGovernment)
            credential: azure-identity credential; DefaultAzureCredential if omitted
            timeout_s: Request timeout in seconds
            max_retries: Maximum number of retries for transient errors
            base_delay: Base delay for exponential backoff
            token_rotation_seconds: Age after which the bearer token is replaced
        """
        self.cloud = cloud
        self.endpoints = CLOUDS[cloud]
        self.api_base = self.endpoints["arm"]
        self.timeout_s = timeout_s
        self.max_retries = max_retries
        self.base_delay = base_delay

        self.credential = credential or DefaultAzureCredential(
            authority=self.endpoints["authority"]
        )
        self.tokens = TokenRotator(
            self.credential,
            f"{self.api_base}/.default",
            rotate_after=token_rotation_seconds,
        )
        self.session = requests.Session()

    def _url(self, path: str) -> str:
        """Construct full API URL from path (absolute links pass through)."""
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base}/{path.lstrip('/')}"

    def _request_with_retry(
        self, method: str, url: str, retry: bool = True, **kwargs
    ) -> requests.Response:
        """
        Execute HTTP request with exponential backoff retry for transient errors.

        Args:
            method: HTTP method
            url: Request URL
            retry: Retry transient errors; False sends a single attempt and
                leaves retrying to the caller
            **kwargs: Additional request parameters

        Returns:
            The final response (which may carry a non-retryable error status)

        Raises:
            ArmRequestError: If max retries exceeded
        """
        last_error = None
        last_status = None
        reauthenticated = False
        attempts = self.max_retries + 1 if retry else 1
        attempt = 0

        while attempt < attempts:
            headers = {"Authorization": f"Bearer {self.tokens.token()}"}
            try:
                resp = self.session.request(
                    method.upper(),
                    url,
                    headers=headers,
                    timeout=self.timeout_s,
                    **kwargs,
                )
            except requests.RequestException as e:
                last_error = str(e)
                attempt += 1
                if attempt < attempts:
                    delay = self._calculate_delay(attempt - 1)
                    logger.warning(
                        f"Request error: {e}, attempt {attempt}/{attempts}, waiting {delay:.1f}s..."
                    )
                    time.sleep(delay)
                continue

            # A token refresh does not count against the attempt budget
            if resp.status_code == 401 and not reauthenticated:
                logger.info("Access token rejected, refreshing credentials")
                self.tokens.invalidate()
                reauthenticated = True
                continue

            if resp.status_code in self.RETRYABLE_STATUS_CODES:
                error_info = self._error_message(resp)
                last_status = resp.status_code
                last_error = f"HTTP {resp.status_code}: {error_info or resp.text[:200]}"
                attempt += 1
                if attempt < attempts:
                    delay = self._calculate_delay(attempt - 1, resp)
                    logger.warning(
                        f"Retryable error {resp.status_code} ({error_info}), attempt {attempt}/{attempts}, waiting {delay:.1f}s..."
                    )
                    time.sleep(delay)
                continue

            return resp

        if not retry:
            raise ArmRequestError(
                f"Request failed. Last error: {last_error}", status_code=last_status
            )
        raise ArmRequestError(
            f"Max retries exceeded. Last error: {last_error}", status_code=last_status
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

        base = self.base_delay
        if resp is not None and resp.status_code == 409:
            base = 15.0  # another operation holds the resource

        delay = base * (2**attempt)
        jitter = delay * 0.2 * (0.5 - time.time() % 1)
        return min(delay + jitter, 180.0)

    @staticmethod
    def _error_message(resp) -> str:
        try:
            return resp.json().get("error", {}).get("message", "")
        except ValueError:
            return ""

    def _check(self, resp, action: str, ok=(200,)) -> Dict:
        if resp.status_code not in ok:
            raise ArmRequestError(
                f"{action} failed ({resp.status_code}): {self._error_message(resp) or resp.text[:300]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    # Generic verbs

    def get(self, path: str, api_version: str, params: Optional[Dict] = None) -> Dict:
        """
        GET a resource.

        Raises:
            ArmRequestError: On any non-200 response (404 included)
        """
        query = {"api-version": api_version, **(params or {})}
        resp = self._request_with_retry("GET", self._url(path), params=query)
        return self._check(resp, f"GET {path}")

    def get_optional(self, path: str, api_version: str) -> Optional[Dict]:
        """GET a resource, returning None when it does not exist."""
        try:
            return self.get(path, api_version)
        except ArmRequestError as e:
            if e.not_found:
                return None
            raise

    def put(self, path: str, api_version: str, body: Dict, retry: bool = True) -> Dict:
        resp = self._request_with_retry(
            "PUT", self._url(path), retry=retry, params={"api-version": api_version}, json=body
        )
        return self._check(resp, f"PUT {path}", ok=(200, 201, 202))

    def patch(self, path: str, api_version: str, body: Dict) -> Dict:
        resp = self._request_with_retry(
            "PATCH", self._url(path), params={"api-version": api_version}, json=body
        )
        return self._check(resp, f"PATCH {path}", ok=(200, 202))

    def post(self, path: str, api_version: str, body: Optional[Dict] = None) -> Dict:
        resp = self._request_with_retry(
            "POST", self._url(path), params={"api-version": api_version}, json=body or {}
        )
        return self._check(resp, f"POST {path}", ok=(200, 202))

    def delete(self, path: str, api_version: str) -> bool:
        """
        DELETE a resource.

        Returns:
            True if a delete was accepted, False if the resource did not exist
        """
        resp = self._request_with_retry(
            "DELETE", self._url(path), params={"api-version": api_version}
        )
        if resp.status_code in (204, 404):
            return False
        self._check(resp, f"DELETE {path}", ok=(200, 202))
        return True

    def list_all(self, path: str, api_version: str) -> List[Dict]:
        """
        List a collection, following nextLink pages.

        Returns:
            All items from the `value` arrays
        """
        items: List[Dict] = []
        data = self.get(path, api_version)
        while True:
            items.extend(data.get("value", []))
            next_link = data.get("nextLink")
            if not next_link:
                break
            resp = self._request_with_retry("GET", next_link)
            data = self._check(resp, "GET nextLink")
        return items

    # Resource inventory

    def query_resources(self, query: str) -> List[Dict]:
        """
        Run an Azure Resource Graph query across all visible subscriptions.

        Args:
            query: KQL query text

        Returns:
            Result rows as dictionaries
        """
        rows: List[Dict] = []
        body: Dict = {"query": query, "options": {"resultFormat": "objectArray"}}
        while True:
            data = self.post(
                "providers/Microsoft.ResourceGraph/resources",
                RESOURCE_GRAPH_API_VERSION,
                body,
            )
            rows.extend(data.get("data", []))
            skip_token = data.get("$skipToken")
            if not skip_token:
                break
            body["options"]["$skipToken"] = skip_token
        return rows

    # SQL

    @staticmethod
    def server_path(topology: ServerTopology) -> str:
        return (
            f"subscriptions/{topology.subscription_id}/resourceGroups/"
            f"{topology.resource_group}/providers/Microsoft.Sql/servers/{topology.name}"
        )

    def database_path(self, topology: ServerTopology, name: str) -> str:
        return f"{self.server_path(topology)}/databases/{name}"

    def list_databases(self, topology: ServerTopology) -> List[Dict]:
        return self.list_all(f"{self.server_path(topology)}/databases", SQL_API_VERSION)

    def get_database(self, topology: ServerTopology, name: str) -> Optional[Dict]:
        return self.get_optional(self.database_path(topology, name), SQL_API_VERSION)

    def delete_database(self, topology: ServerTopology, name: str) -> bool:
        return self.delete(self.database_path(topology, name), SQL_API_VERSION)

    def copy_database(
        self,
        source_database_id: str,
        destination: ServerTopology,
        destination_name: str,
        elastic_pool_id: Optional[str] = None,
    ) -> Dict:
        """
        Issue a "create as copy" request for a database.

        Sent as a single attempt; callers own the retry policy for copies.

        Args:
            source_database_id: Full resource ID of the source database
            destination: Destination server
            destination_name: Name of the new database
            elastic_pool_id: Pool to place the copy in

        Returns:
            The accepted resource body
        """
        properties: Dict = {"createMode": "Copy", "sourceDatabaseId": source_database_id}
        if elastic_pool_id:
            properties["elasticPoolId"] = elastic_pool_id
        body = {"location": destination.region, "properties": properties}
        return self.put(
            self.database_path(destination, destination_name), SQL_API_VERSION, body, retry=False
        )

    def restore_database(
        self,
        topology: ServerTopology,
        source_name: str,
        restored_name: str,
        restore_point: datetime,
        sku: str = "S3",
    ) -> Dict:
        """Issue a point-in-time restore of `source_name` into `restored_name`."""
        source_id = f"/{self.database_path(topology, source_name)}"
        body = {
            "location": topology.region,
            "sku": {"name": sku, "tier": "Standard"},
            "properties": {
                "createMode": "PointInTimeRestore",
                "sourceDatabaseId": source_id,
                "restorePointInTime": restore_point.strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        }
        return self.put(self.database_path(topology, restored_name), SQL_API_VERSION, body)

    def list_elastic_pools(self, topology: ServerTopology) -> List[Dict]:
        return self.list_all(
            f"{self.server_path(topology)}/elasticPools", SQL_API_VERSION
        )

    def list_failover_groups(self, topology: ServerTopology) -> List[Dict]:
        return self.list_all(
            f"{self.server_path(topology)}/failoverGroups", SQL_API_VERSION
        )

    def add_to_failover_group(self, group_id: str, database_id: str) -> Dict:
        """Add a database to a failover group (replicas seed asynchronously)."""
        group = self.get(group_id, SQL_API_VERSION)
        databases = list(group.get("properties", {}).get("databases", []))
        if any(d.lower() == database_id.lower() for d in databases):
            return group
        databases.append(database_id)
        return self.patch(group_id, SQL_API_VERSION, {"properties": {"databases": databases}})

    def get_database_size_bytes(self, resource_id: str) -> Optional[int]:
        """
        Read the used data space of a database from Azure Monitor.

        Returns:
            Size in bytes, or None when the database is not measurable yet
        """
        end = datetime.now(timezone.utc)
        start = end - timedelta(minutes=30)
        timespan = f"{start:%Y-%m-%dT%H:%M:%SZ}/{end:%Y-%m-%dT%H:%M:%SZ}"
        try:
            data = self.get(
                f"{resource_id.lstrip('/')}/providers/Microsoft.Insights/metrics",
                METRICS_API_VERSION,
                params={
                    "metricnames": "storage",
                    "aggregation": "Maximum",
                    "interval": "PT5M",
                    "timespan": timespan,
                },
            )
        except ArmRequestError as e:
            if e.not_found:
                return None
            raise

        latest = None
        for metric in data.get("value", []):
            for series in metric.get("timeseries", []):
                for point in series.get("data", []):
                    if point.get("maximum") is not None:
                        latest = int(point["maximum"])
        return latest

    # Tags

    def get_tags(self, resource_id: str) -> Dict[str, str]:
        data = self.get_optional(
            f"{resource_id.lstrip('/')}/providers/Microsoft.Resources/tags/default",
            TAGS_API_VERSION,
        )
        if not data:
            return {}
        return dict(data.get("properties", {}).get("tags") or {})

    def merge_tags(self, resource_id: str, tags: Dict[str, str]) -> Dict:
        body = {"operation": "Merge", "properties": {"tags": tags}}
        return self.patch(
            f"{resource_id.lstrip('/')}/providers/Microsoft.Resources/tags/default",
            TAGS_API_VERSION,
            body,
        )

    # Storage

    @staticmethod
    def storage_account_path(topology: ServerTopology) -> str:
        return (
            f"subscriptions/{topology.subscription_id}/resourceGroups/"
            f"{topology.resource_group}/providers/Microsoft.Storage/storageAccounts/"
            f"{topology.name}"
        )

    def get_storage_default_action(self, topology: ServerTopology) -> str:
        data = self.get(self.storage_account_path(topology), STORAGE_API_VERSION)
        acls = data.get("properties", {}).get("networkAcls", {})
        return acls.get("defaultAction", "Allow")

    def set_storage_default_action(self, topology: ServerTopology, action: str) -> Dict:
        body = {"properties": {"networkAcls": {"defaultAction": action}}}
        return self.patch(self.storage_account_path(topology), STORAGE_API_VERSION, body)

    # Authorization

    def create_role_assignment(
        self, scope: str, assignment_name: str, role_definition_id: str, principal_id: str
    ) -> Dict:
        subscription = scope.strip("/").split("/")[1]
        body = {
            "properties": {
                "roleDefinitionId": (
                    f"/subscriptions/{subscription}/providers/Microsoft.Authorization/"
                    f"roleDefinitions/{role_definition_id}"
                ),
                "principalId": principal_id,
            }
        }
        return self.put(
            f"{scope.strip('/')}/providers/Microsoft.Authorization/roleAssignments/{assignment_name}",
            AUTHORIZATION_API_VERSION,
            body,
        )

    def delete_role_assignment(self, scope: str, assignment_name: str) -> bool:
        return self.delete(
            f"{scope.strip('/')}/providers/Microsoft.Authorization/roleAssignments/{assignment_name}",
            AUTHORIZATION_API_VERSION,
        )

    # Monitoring

    def set_monitor_enabled(
        self, resource_id: str, api_version: str, enabled: bool, key: str = "enabled"
    ) -> Dict:
        """Toggle the enabled flag of a metric alert or web test (web tests use `Enabled`)."""
        path = resource_id.lstrip("/")
        resource = self.get(path, api_version)
        resource.setdefault("properties", {})[key] = enabled
        return self.put(path, api_version, resource)
