"""Google Cloud implementation of the resource management API.

IAM, Resource Manager and Service Usage are called over REST through an
AuthorizedSession; buckets go through google-cloud-storage. Every HTTP
failure is raised as a google.api_core exception so classification works the
same way for both paths.

SECURITY: Credentials always come from security.get_default_credentials();
timeouts are enforced on every request and long-running operation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from typing import Any

import requests
from google.api_core import exceptions as api_exceptions
from google.auth.credentials import Credentials
from google.auth.transport.requests import AuthorizedSession
from google.cloud import storage

from .client import CloudResourceClient
from .config import WORKLOAD_IDENTITY_LOCATION, Config
from .executor import service_account_email
from .models import ResourceKind, ResourceSpec
from .probe import DELETED_STATE, binding_present

logger = logging.getLogger(__name__)

IAM_API = "https://iam.googleapis.com/v1"
RESOURCE_MANAGER_API = "https://cloudresourcemanager.googleapis.com/v1"
SERVICE_USAGE_API = "https://serviceusage.googleapis.com/v1"

OPERATION_POLL_INTERVAL_SECONDS = 2
IAM_POLICY_VERSION = 3

# google.rpc status names that refine the generic HTTP status mapping
STATUS_EXCEPTIONS: dict[str, type[api_exceptions.GoogleAPICallError]] = {
    "ALREADY_EXISTS": api_exceptions.AlreadyExists,
    "ABORTED": api_exceptions.Aborted,
    "RESOURCE_EXHAUSTED": api_exceptions.ResourceExhausted,
    "FAILED_PRECONDITION": api_exceptions.FailedPrecondition,
    "PERMISSION_DENIED": api_exceptions.PermissionDenied,
    "UNAVAILABLE": api_exceptions.ServiceUnavailable,
}

# Declared attribute -> provider field paths for update masks
POOL_FIELDS: dict[str, str] = {
    "displayName": "displayName",
    "description": "description",
    "disabled": "disabled",
}
PROVIDER_FIELDS: dict[str, str] = {
    "displayName": "displayName",
    "description": "description",
    "disabled": "disabled",
    "attributeMapping": "attributeMapping",
    "attributeCondition": "attributeCondition",
    "allowedAudiences": "oidc.allowedAudiences",
}
SERVICE_ACCOUNT_FIELDS: dict[str, str] = {
    "displayName": "displayName",
    "description": "description",
}


def raise_for_status(response: requests.Response) -> None:
    """Raise a google.api_core exception for a failed response."""
    if response.ok:
        return

    status = None
    message = response.text
    try:
        error = response.json().get("error", {})
        status = error.get("status")
        message = error.get("message", message)
    except ValueError:
        pass

    exc_class = STATUS_EXCEPTIONS.get(status or "")
    if exc_class is not None:
        raise exc_class(message, response=response)
    raise api_exceptions.from_http_response(response)


def _operation_error(operation: dict[str, Any]) -> api_exceptions.GoogleAPICallError:
    error = operation.get("error") or {}
    # Operation errors carry gRPC codes; map the common ones
    grpc_code = error.get("code")
    message = error.get("message", "operation failed")
    grpc_to_exception: dict[int, type[api_exceptions.GoogleAPICallError]] = {
        3: api_exceptions.InvalidArgument,
        5: api_exceptions.NotFound,
        6: api_exceptions.AlreadyExists,
        7: api_exceptions.PermissionDenied,
        8: api_exceptions.ResourceExhausted,
        9: api_exceptions.FailedPrecondition,
        10: api_exceptions.Aborted,
        14: api_exceptions.ServiceUnavailable,
    }
    return grpc_to_exception.get(grpc_code, api_exceptions.InternalServerError)(message)


class GcpResourceClient(CloudResourceClient):
    """Resource management API for one GCP project."""

    def __init__(
        self,
        config: Config,
        credentials: Credentials,
        *,
        session: AuthorizedSession | None = None,
        storage_client: storage.Client | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._session = session or AuthorizedSession(credentials)
        self._storage = storage_client or storage.Client(
            project=config.project_id, credentials=credentials
        )

    def with_config(self, config: Config) -> GcpResourceClient:
        """Same connections, new configuration (e.g. a resolved project number)."""
        return GcpResourceClient(
            config,
            self._credentials,
            session=self._session,
            storage_client=self._storage,
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        response = self._session.request(
            method,
            url,
            json=json,
            params=params,
            timeout=self._config.request_timeout_seconds,
        )
        raise_for_status(response)
        return response.json() if response.content else {}

    def _get_or_none(self, url: str) -> dict[str, Any] | None:
        try:
            return self._request("GET", url)
        except api_exceptions.NotFound:
            return None

    def _wait_for_operation(self, operation: dict[str, Any], api_base: str) -> dict[str, Any]:
        """Poll a long-running operation until done or timed out."""
        deadline = time.monotonic() + self._config.operation_timeout_seconds
        while not operation.get("done"):
            if time.monotonic() >= deadline:
                raise api_exceptions.DeadlineExceeded(
                    f"Operation {operation.get('name')} did not finish within "
                    f"{self._config.operation_timeout_seconds}s"
                )
            time.sleep(OPERATION_POLL_INTERVAL_SECONDS)
            operation = self._request("GET", f"{api_base}/{operation['name']}")

        if operation.get("error"):
            raise _operation_error(operation)
        return operation.get("response") or {}

    # ------------------------------------------------------------------
    # Resource names
    # ------------------------------------------------------------------

    @property
    def _project_path(self) -> str:
        return f"projects/{self._config.project_id}"

    def _pool_url(self, pool: str) -> str:
        return (
            f"{IAM_API}/{self._project_path}/locations/{WORKLOAD_IDENTITY_LOCATION}"
            f"/workloadIdentityPools/{pool}"
        )

    def _provider_url(self, pool: str, provider: str) -> str:
        return f"{self._pool_url(pool)}/providers/{provider}"

    def _service_account_url(self, account: str) -> str:
        email = account if "@" in account else service_account_email(account, self._config.project_id)
        return f"{IAM_API}/{self._project_path}/serviceAccounts/{email}"

    def _policy_url(self, spec: ResourceSpec) -> str:
        account = spec.attributes.get("serviceAccount")
        if account:
            return self._service_account_url(account)
        return f"{RESOURCE_MANAGER_API}/{self._project_path}"

    def resolve_project_number(self) -> str | None:
        project = self._request("GET", f"{RESOURCE_MANAGER_API}/{self._project_path}")
        number = project.get("projectNumber")
        logger.info(
            "Resolved project number",
            extra={"project_id": self._config.project_id, "project_number": number},
        )
        return str(number) if number else None

    # ------------------------------------------------------------------
    # CloudResourceClient
    # ------------------------------------------------------------------

    def get_resource(self, spec: ResourceSpec) -> dict[str, Any] | None:
        match spec.kind:
            case ResourceKind.PROJECT_SERVICE:
                return self._get_or_none(
                    f"{SERVICE_USAGE_API}/{self._project_path}/services/{spec.identifier}"
                )
            case ResourceKind.SERVICE_ACCOUNT:
                return self._get_or_none(self._service_account_url(spec.identifier))
            case ResourceKind.IDENTITY_POOL:
                return self._get_or_none(self._pool_url(spec.identifier))
            case ResourceKind.OIDC_PROVIDER:
                return self._get_or_none(
                    self._provider_url(spec.attributes["pool"], spec.identifier)
                )
            case ResourceKind.STORAGE_BUCKET:
                return self._get_bucket(spec.identifier)
            case ResourceKind.IAM_BINDING:
                return self._get_policy(spec)
        raise ValueError(f"Unsupported resource kind: {spec.kind}")

    def create_resource(self, spec: ResourceSpec) -> dict[str, Any]:
        logger.info(
            "Creating resource",
            extra={"identifier": spec.identifier, "kind": spec.kind.value},
        )
        match spec.kind:
            case ResourceKind.PROJECT_SERVICE:
                operation = self._request(
                    "POST",
                    f"{SERVICE_USAGE_API}/{self._project_path}/services/{spec.identifier}:enable",
                    json={},
                )
                return self._wait_for_operation(operation, SERVICE_USAGE_API)
            case ResourceKind.SERVICE_ACCOUNT:
                return self._request(
                    "POST",
                    f"{IAM_API}/{self._project_path}/serviceAccounts",
                    json={
                        "accountId": spec.identifier,
                        "serviceAccount": self._body(spec, SERVICE_ACCOUNT_FIELDS),
                    },
                )
            case ResourceKind.IDENTITY_POOL:
                return self._create_workload_identity_resource(
                    spec,
                    url=self._pool_url(spec.identifier),
                    collection_url=self._pool_url(spec.identifier).rsplit("/", 1)[0],
                    id_param="workloadIdentityPoolId",
                    fields=POOL_FIELDS,
                )
            case ResourceKind.OIDC_PROVIDER:
                url = self._provider_url(spec.attributes["pool"], spec.identifier)
                return self._create_workload_identity_resource(
                    spec,
                    url=url,
                    collection_url=url.rsplit("/", 1)[0],
                    id_param="workloadIdentityPoolProviderId",
                    fields=PROVIDER_FIELDS,
                )
            case ResourceKind.STORAGE_BUCKET:
                return self._create_bucket(spec)
            case ResourceKind.IAM_BINDING:
                return self.bind_policy(spec)
        raise ValueError(f"Unsupported resource kind: {spec.kind}")

    def update_resource(self, spec: ResourceSpec, fields: Sequence[str]) -> dict[str, Any]:
        logger.info(
            "Updating resource",
            extra={"identifier": spec.identifier, "kind": spec.kind.value, "fields": list(fields)},
        )
        match spec.kind:
            case ResourceKind.SERVICE_ACCOUNT:
                mask = ",".join(SERVICE_ACCOUNT_FIELDS[f] for f in fields)
                return self._request(
                    "PATCH",
                    self._service_account_url(spec.identifier),
                    json={
                        "serviceAccount": self._body(spec, SERVICE_ACCOUNT_FIELDS, only=fields),
                        "updateMask": mask,
                    },
                )
            case ResourceKind.IDENTITY_POOL:
                return self._patch_workload_identity_resource(
                    spec, self._pool_url(spec.identifier), POOL_FIELDS, fields
                )
            case ResourceKind.OIDC_PROVIDER:
                return self._patch_workload_identity_resource(
                    spec,
                    self._provider_url(spec.attributes["pool"], spec.identifier),
                    PROVIDER_FIELDS,
                    fields,
                )
            case ResourceKind.STORAGE_BUCKET:
                return self._update_bucket(spec, fields)
        raise ValueError(f"{spec.kind.value} does not support in-place updates")

    def bind_policy(self, spec: ResourceSpec) -> dict[str, Any]:
        role = spec.attributes["role"]
        member = self._config.expand(spec.attributes["member"])

        policy = self._get_policy(spec)
        if policy is None:
            raise api_exceptions.NotFound(f"IAM policy target for '{spec.identifier}' not found")

        if binding_present(policy, role, member):
            return policy

        bindings = policy.setdefault("bindings", [])
        for binding in bindings:
            if binding.get("role") == role and not binding.get("condition"):
                binding.setdefault("members", []).append(member)
                break
        else:
            bindings.append({"role": role, "members": [member]})
        policy["version"] = IAM_POLICY_VERSION

        logger.info(
            "Binding IAM policy",
            extra={"identifier": spec.identifier, "role": role, "member": member},
        )
        # etag in the policy makes concurrent edits fail with ABORTED (retried)
        return self._request("POST", f"{self._policy_url(spec)}:setIamPolicy", json={"policy": policy})

    # ------------------------------------------------------------------
    # IAM helpers
    # ------------------------------------------------------------------

    def _get_policy(self, spec: ResourceSpec) -> dict[str, Any] | None:
        try:
            return self._request(
                "POST",
                f"{self._policy_url(spec)}:getIamPolicy",
                json={"options": {"requestedPolicyVersion": IAM_POLICY_VERSION}},
            )
        except api_exceptions.NotFound:
            return None

    @staticmethod
    def _body(
        spec: ResourceSpec,
        fields: dict[str, str],
        only: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Build a REST body from declared attributes, nesting dotted paths."""
        body: dict[str, Any] = {}
        for name, value in spec.attributes.items():
            if name not in fields or (only is not None and name not in only):
                continue
            target = body
            *parents, leaf = fields[name].split(".")
            for parent in parents:
                target = target.setdefault(parent, {})
            target[leaf] = value
        if spec.kind == ResourceKind.OIDC_PROVIDER and only is None:
            body.setdefault("oidc", {})["issuerUri"] = spec.attributes["issuerUri"]
        return body

    def _create_workload_identity_resource(
        self,
        spec: ResourceSpec,
        *,
        url: str,
        collection_url: str,
        id_param: str,
        fields: dict[str, str],
    ) -> dict[str, Any]:
        # Soft-deleted pools/providers block re-creation for 30 days; restore them
        existing = self._get_or_none(url)
        if existing is not None and existing.get("state") == DELETED_STATE:
            logger.warning(
                "Restoring soft-deleted resource",
                extra={"identifier": spec.identifier, "kind": spec.kind.value},
            )
            operation = self._request("POST", f"{url}:undelete", json={})
            self._wait_for_operation(operation, IAM_API)
            return self._patch_workload_identity_resource(spec, url, fields, list(spec.attributes))

        operation = self._request(
            "POST",
            collection_url,
            params={id_param: spec.identifier},
            json=self._body(spec, fields),
        )
        return self._wait_for_operation(operation, IAM_API)

    def _patch_workload_identity_resource(
        self,
        spec: ResourceSpec,
        url: str,
        fields: dict[str, str],
        changed: Sequence[str],
    ) -> dict[str, Any]:
        updatable = [f for f in changed if f in fields]
        if not updatable:
            return self._request("GET", url)
        operation = self._request(
            "PATCH",
            url,
            params={"updateMask": ",".join(fields[f] for f in updatable)},
            json=self._body(spec, fields, only=updatable),
        )
        return self._wait_for_operation(operation, IAM_API)

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _bucket_payload(bucket: storage.Bucket) -> dict[str, Any]:
        return {
            "name": bucket.name,
            "location": bucket.location,
            "versioning": {"enabled": bool(bucket.versioning_enabled)},
            "iamConfiguration": {
                "uniformBucketLevelAccess": {
                    "enabled": bool(bucket.iam_configuration.uniform_bucket_level_access_enabled)
                }
            },
            "lifecycle": {"rule": [dict(rule) for rule in bucket.lifecycle_rules]},
        }

    def _get_bucket(self, name: str) -> dict[str, Any] | None:
        bucket = self._storage.lookup_bucket(name, timeout=self._config.request_timeout_seconds)
        return self._bucket_payload(bucket) if bucket is not None else None

    @staticmethod
    def _apply_bucket_attributes(bucket: storage.Bucket, spec: ResourceSpec, fields: Sequence[str]) -> None:
        attributes = spec.attributes
        if "versioning" in fields:
            bucket.versioning_enabled = bool(attributes["versioning"])
        if "uniformBucketLevelAccess" in fields:
            bucket.iam_configuration.uniform_bucket_level_access_enabled = bool(
                attributes["uniformBucketLevelAccess"]
            )
        if "noncurrentVersionRetentionDays" in fields:
            # Replace any existing noncurrent-version delete rule
            kept = [
                dict(rule)
                for rule in bucket.lifecycle_rules
                if not (
                    rule.get("action", {}).get("type") == "Delete"
                    and rule.get("condition", {}).get("isLive") is False
                )
            ]
            bucket.lifecycle_rules = kept
            days = attributes["noncurrentVersionRetentionDays"]
            if days is not None:
                bucket.add_lifecycle_delete_rule(age=int(days), is_live=False)

    def _create_bucket(self, spec: ResourceSpec) -> dict[str, Any]:
        bucket = self._storage.bucket(spec.identifier)
        self._apply_bucket_attributes(bucket, spec, list(spec.attributes))
        created = self._storage.create_bucket(
            bucket,
            project=self._config.project_id,
            location=spec.attributes.get("location"),
            timeout=self._config.request_timeout_seconds,
        )
        return self._bucket_payload(created)

    def _update_bucket(self, spec: ResourceSpec, fields: Sequence[str]) -> dict[str, Any]:
        bucket = self._storage.get_bucket(spec.identifier, timeout=self._config.request_timeout_seconds)
        self._apply_bucket_attributes(bucket, spec, fields)
        bucket.patch(timeout=self._config.request_timeout_seconds)
        return self._bucket_payload(bucket)
