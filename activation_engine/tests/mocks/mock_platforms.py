"""
Mock ad platform API servers for activator and service tests.

Simulates:
- Google Ads: user list creation, offline user data jobs, GAQL search
- Meta: Custom Audience creation, user batches, audience reads/deletes
- TikTok: audience creation, id mapping batches, audience reads/deletes

Every request is recorded. Failures can be queued per path fragment to
exercise retry and error classification.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

import httpx


@dataclass
class RecordedRequest:
    """A request received by a mock server."""
    method: str
    path: str
    json: Optional[Any]
    params: Dict[str, str]
    headers: Dict[str, str]


@dataclass
class QueuedFailure:
    fragment: str
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    method: Optional[str] = None
    remaining: int = 1


class MockPlatformServer:
    """Base mock server: request recording and failure injection."""

    def __init__(self):
        self.requests: List[RecordedRequest] = []
        self._failures: List[QueuedFailure] = []

    def fail_next(
        self,
        fragment: str,
        status_code: int,
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        method: Optional[str] = None,
        times: int = 1,
    ) -> None:
        """Answer the next `times` requests whose path contains `fragment` with an error."""
        self._failures.append(QueuedFailure(
            fragment=fragment,
            status_code=status_code,
            body=body if body is not None else {"error": {"message": "injected failure"}},
            headers=headers or {},
            method=method,
            remaining=times,
        ))

    def requests_to(self, fragment: str, method: Optional[str] = None) -> List[RecordedRequest]:
        return [
            r for r in self.requests
            if fragment in r.path and (method is None or r.method == method)
        ]

    def reset(self) -> None:
        self.requests.clear()
        self._failures.clear()

    def _take_failure(self, method: str, path: str) -> Optional[httpx.Response]:
        for failure in self._failures:
            if failure.fragment in path and (failure.method in (None, method)):
                failure.remaining -= 1
                if failure.remaining <= 0:
                    self._failures.remove(failure)
                return httpx.Response(
                    failure.status_code, json=failure.body, headers=failure.headers,
                )
        return None

    def route(self, method: str, path: str, payload: Any, params: Dict[str, str]) -> httpx.Response:
        raise NotImplementedError

    def get_mock_transport(self) -> httpx.MockTransport:
        """
        Create an httpx MockTransport for this mock server.

        Usage:
            client = httpx.AsyncClient(transport=mock.get_mock_transport())
        """
        def handle_request(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            method = request.method
            payload = json.loads(request.content) if request.content else None
            params = {k: v[0] for k, v in parse_qs(request.url.query.decode()).items()}

            self.requests.append(RecordedRequest(
                method=method,
                path=path,
                json=payload,
                params=params,
                headers=dict(request.headers),
            ))

            failure = self._take_failure(method, path)
            if failure is not None:
                return failure
            return self.route(method, path, payload, params)

        return httpx.MockTransport(handle_request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.get_mock_transport())


# =============================================================================
# Google Ads
# =============================================================================

class MockGoogleAdsServer(MockPlatformServer):
    """
    Google Ads Customer Match.

    `job_statuses` is consumed one entry per job poll; the last entry
    repeats once the list is exhausted.
    """

    def __init__(
        self,
        job_statuses: Optional[List[str]] = None,
        match_rate_range: str = "MATCH_RANGE_20_TO_30",
        failure_reason: str = "CUSTOMER_NOT_ACCEPTED_CUSTOMER_DATA_TERMS",
        membership_status: str = "OPEN",
    ):
        super().__init__()
        self.job_statuses = list(job_statuses or ["SUCCESS"])
        self.match_rate_range = match_rate_range
        self.failure_reason = failure_reason
        self.membership_status = membership_status
        self._next_id = 1000

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def operations_sent(self) -> List[Dict[str, Any]]:
        operations = []
        for request in self.requests_to(":addOperations"):
            operations.extend(request.json["operations"])
        return operations

    def route(self, method, path, payload, params):
        customer_id = path.split("/customers/")[1].split("/")[0] if "/customers/" in path else ""

        if path.endswith("/userLists:mutate"):
            return httpx.Response(200, json={
                "results": [{"resourceName": f"customers/{customer_id}/userLists/{self._new_id()}"}],
            })
        if path.endswith("/offlineUserDataJobs:create"):
            return httpx.Response(200, json={
                "resourceName": f"customers/{customer_id}/offlineUserDataJobs/{self._new_id()}",
            })
        if path.endswith(":addOperations") or path.endswith(":run"):
            return httpx.Response(200, json={})
        if path.endswith("/googleAds:search"):
            query = payload["query"]
            if "FROM offline_user_data_job" in query:
                return httpx.Response(200, json={"results": [self._job_row(query)]})
            if "FROM user_list" in query:
                resource_name = query.split("user_list.resource_name = '")[1].rstrip("'")
                return httpx.Response(200, json={"results": [{
                    "userList": {
                        "resourceName": resource_name,
                        "name": "High Value Customers",
                        "membershipStatus": self.membership_status,
                        "sizeForSearch": "1200",
                        "matchRatePercentage": 45,
                    },
                }]})
        return httpx.Response(404, json={"error": {"message": "Not found"}})

    def _job_row(self, query: str) -> Dict[str, Any]:
        job_name = query.split("offline_user_data_job.resource_name = '")[1].rstrip("'")
        status = self.job_statuses.pop(0) if len(self.job_statuses) > 1 else self.job_statuses[0]
        job: Dict[str, Any] = {"resourceName": job_name, "status": status}
        if status == "SUCCESS":
            job["operationMetadata"] = {"matchRateRange": self.match_rate_range}
        if status == "FAILED":
            job["failureReason"] = self.failure_reason
        return {"offlineUserDataJob": job}


# =============================================================================
# Meta
# =============================================================================

class MockMetaServer(MockPlatformServer):
    """
    Meta Marketing API Custom Audiences.

    Each users batch reports every row as received and `invalid_per_batch`
    of them as invalid.
    """

    def __init__(self, invalid_per_batch: int = 0, operation_status_code: int = 200):
        super().__init__()
        self.invalid_per_batch = invalid_per_batch
        self.operation_status_code = operation_status_code
        self.audience_id = "23850000000000001"

    def rows_sent(self, method: str = "POST") -> List[List[str]]:
        rows = []
        for request in self.requests_to("/users", method=method):
            rows.extend(request.json["payload"]["data"])
        return rows

    def route(self, method, path, payload, params):
        if path.endswith("/customaudiences") and method == "POST":
            return httpx.Response(200, json={"id": self.audience_id})
        if path.endswith("/users"):
            rows = payload["payload"]["data"]
            return httpx.Response(200, json={
                "audience_id": self.audience_id,
                "session_id": "9778993",
                "num_received": len(rows),
                "num_invalid_entries": min(self.invalid_per_batch, len(rows)),
                "invalid_entry_samples": {},
            })
        if method == "GET":
            return httpx.Response(200, json={
                "id": path.rsplit("/", 1)[-1],
                "name": "High Value Customers",
                "approximate_count_lower_bound": 900,
                "approximate_count_upper_bound": 1100,
                "operation_status": {"code": self.operation_status_code, "description": "Normal"},
            })
        if method == "DELETE":
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": {"message": "Not found", "code": 803}})


# =============================================================================
# TikTok
# =============================================================================

class MockTikTokServer(MockPlatformServer):
    """TikTok Business API custom audiences (code 0 envelope)."""

    def __init__(self, invalid_per_batch: int = 0, is_valid: bool = True, is_expired: bool = False):
        super().__init__()
        self.invalid_per_batch = invalid_per_batch
        self.is_valid = is_valid
        self.is_expired = is_expired
        self.audience_id = "7012345678901234"

    @staticmethod
    def envelope(data: Dict[str, Any], code: int = 0, message: str = "OK") -> Dict[str, Any]:
        return {"code": code, "message": message, "request_id": "req-1", "data": data}

    def route(self, method, path, payload, params):
        if path.endswith("/segment/audience/"):
            return httpx.Response(200, json=self.envelope({"audience_id": self.audience_id}))
        if path.endswith("/segment/mapping/"):
            rows = payload["batch_data"]
            return httpx.Response(200, json=self.envelope({
                "received_count": len(rows),
                "invalid_count": min(self.invalid_per_batch, len(rows)),
            }))
        if path.endswith("/dmp/custom_audience/get/"):
            return httpx.Response(200, json=self.envelope({"list": [{
                "audience_details": {
                    "name": "High Value Customers",
                    "is_valid": self.is_valid,
                    "is_expired": self.is_expired,
                    "cover_num": 5000,
                },
            }]}))
        if path.endswith("/dmp/custom_audience/delete/"):
            return httpx.Response(200, json=self.envelope({}))
        return httpx.Response(404, json=self.envelope({}, code=40002, message="Not found"))
