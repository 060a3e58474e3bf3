"""GCP API mocks for testing without cloud connectivity.

- MockCloudClient: in-memory CloudResourceClient with error injection and a
  sequenced call log, used by probe, executor and session tests
- FakeHttpSession: scripted AuthorizedSession for exercising the REST client

Usage:
    from gcp_mock import MockCloudClient

    client = MockCloudClient(config)
    client.fail("github-pool", "create", ServiceUnavailable("try again"))
"""

from .client import PROJECT_POLICY, MockCall, MockCloudClient
from .http import FakeHttpSession, RecordedRequest, error_body, make_response

__all__ = [
    "PROJECT_POLICY",
    "FakeHttpSession",
    "MockCall",
    "MockCloudClient",
    "RecordedRequest",
    "error_body",
    "make_response",
]
