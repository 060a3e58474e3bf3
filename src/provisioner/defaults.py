"""Default resource set for GitHub Actions workload identity federation.

Used when the declared configuration names only a repository. The set
mirrors a hand-run bootstrap: enable the APIs, create a deployer service
account with project roles, create a pool and a GitHub OIDC provider trusted
for one repository, let that repository impersonate the service account and
create a versioned bucket for Terraform state.
"""

from __future__ import annotations

from collections.abc import Sequence

from .models import ResourceKind, ResourceSpec

GITHUB_ISSUER_URI = "https://token.actions.githubusercontent.com"

DEFAULT_SERVICE_ACCOUNT = "github-actions-sa"
DEFAULT_POOL = "github-actions-pool"
DEFAULT_PROVIDER = "github-actions-provider"
STATE_BUCKET_SUFFIX = "-terraform-state"
STATE_BUCKET_LOCATION = "US"
NONCURRENT_VERSION_RETENTION_DAYS = 30

REQUIRED_APIS: tuple[str, ...] = (
    "iam.googleapis.com",
    "iamcredentials.googleapis.com",
    "cloudresourcemanager.googleapis.com",
    "storage.googleapis.com",
    "compute.googleapis.com",
)

DEFAULT_ROLES: tuple[str, ...] = (
    "roles/storage.admin",
    "roles/compute.instanceAdmin.v1",
    "roles/iam.serviceAccountUser",
)

WORKLOAD_IDENTITY_USER_ROLE = "roles/iam.workloadIdentityUser"

GITHUB_ATTRIBUTE_MAPPING: dict[str, str] = {
    "google.subject": "assertion.sub",
    "attribute.actor": "assertion.actor",
    "attribute.repository": "assertion.repository",
    "attribute.repository_owner": "assertion.repository_owner",
}


def state_bucket_name(project_id: str) -> str:
    return f"{project_id}{STATE_BUCKET_SUFFIX}"


def repository_principal_set(pool: str, repository: str) -> str:
    """principalSet member for every token issued to ``repository``.

    The project number is left as a placeholder; it is substituted once the
    number has been resolved.
    """
    return (
        "principalSet://iam.googleapis.com/projects/{project_number}/locations/global"
        f"/workloadIdentityPools/{pool}/attribute.repository/{repository}"
    )


def _role_binding_identifier(role: str) -> str:
    # roles/compute.instanceAdmin.v1 -> binding-compute-instanceAdmin-v1
    return "binding-" + role.removeprefix("roles/").replace(".", "-")


def github_federation_resources(
    project_id: str,
    repository: str,
    *,
    service_account: str = DEFAULT_SERVICE_ACCOUNT,
    pool: str = DEFAULT_POOL,
    provider: str = DEFAULT_PROVIDER,
    state_bucket: str | None = None,
    roles: Sequence[str] = DEFAULT_ROLES,
    apis: Sequence[str] = REQUIRED_APIS,
) -> list[ResourceSpec]:
    """Build the default federation resource set for ``repository``.

    Args:
        project_id: Target project.
        repository: GitHub repository in owner/name form.
        service_account: Account ID of the deployer service account.
        pool: Workload identity pool ID.
        provider: OIDC provider ID.
        state_bucket: Terraform state bucket; defaults to
            ``<project>-terraform-state``.
        roles: Project roles granted to the service account.
        apis: Services enabled before anything else is created.

    Returns:
        Resource specs in declaration order.
    """
    bucket = state_bucket or state_bucket_name(project_id)
    api_ids = list(apis)
    iam_api = [a for a in api_ids if a == "iam.googleapis.com"]
    storage_api = [a for a in api_ids if a == "storage.googleapis.com"]
    crm_api = [a for a in api_ids if a == "cloudresourcemanager.googleapis.com"]

    specs: list[ResourceSpec] = [
        ResourceSpec(kind=ResourceKind.PROJECT_SERVICE, identifier=api) for api in api_ids
    ]

    specs.append(
        ResourceSpec(
            kind=ResourceKind.SERVICE_ACCOUNT,
            identifier=service_account,
            attributes={
                "displayName": "GitHub Actions Service Account",
                "description": f"Deploys from {repository} via workload identity federation",
            },
            depends_on=tuple(iam_api),
        )
    )

    for role in roles:
        specs.append(
            ResourceSpec(
                kind=ResourceKind.IAM_BINDING,
                identifier=_role_binding_identifier(role),
                attributes={
                    "role": role,
                    "member": (
                        f"serviceAccount:{service_account}@{{project_id}}.iam.gserviceaccount.com"
                    ),
                },
                depends_on=(service_account, *crm_api),
            )
        )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.IDENTITY_POOL,
            identifier=pool,
            attributes={
                "displayName": "GitHub Actions Pool",
                "description": "Identity pool for GitHub Actions",
            },
            depends_on=tuple(iam_api),
        )
    )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.OIDC_PROVIDER,
            identifier=provider,
            attributes={
                "pool": pool,
                "issuerUri": GITHUB_ISSUER_URI,
                "displayName": "GitHub Actions Provider",
                "attributeMapping": dict(GITHUB_ATTRIBUTE_MAPPING),
                "attributeCondition": f"assertion.repository=='{repository}'",
            },
            depends_on=(pool,),
        )
    )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.IAM_BINDING,
            identifier="binding-workload-identity-user",
            attributes={
                "role": WORKLOAD_IDENTITY_USER_ROLE,
                "member": repository_principal_set(pool, repository),
                "serviceAccount": service_account,
            },
            depends_on=(service_account, provider),
        )
    )

    specs.append(
        ResourceSpec(
            kind=ResourceKind.STORAGE_BUCKET,
            identifier=bucket,
            attributes={
                "location": STATE_BUCKET_LOCATION,
                "versioning": True,
                "uniformBucketLevelAccess": True,
                "noncurrentVersionRetentionDays": NONCURRENT_VERSION_RETENTION_DAYS,
            },
            depends_on=tuple(storage_api),
        )
    )

    return specs
