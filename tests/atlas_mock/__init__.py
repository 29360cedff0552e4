"""In-memory backends for engine and driver tests.

This module provides fakes for the two remote systems the engine talks to,
so reconciliation can be tested without network access.

Key Features:
- In-memory organizations and credential records
- Error injection per operation (one-shot or sticky)
- Call recording for ordering assertions across both backends

Usage:
    from atlas_mock import CallLog, MockCredentialStore, MockOrganizationAPI

    calls = CallLog()
    organizations = MockOrganizationAPI(calls, id_sequence=["org-42"])
    store = MockCredentialStore(calls)
    external = OrganizationExternal(organizations, store, secret_namespace="ns")

    await external.create(spec, status)
    assert calls.names() == ["org.create", "store.put"]
"""

from .calls import CallLog, RecordedCall
from .factories import make_spec
from .organizations import MockOrganizationAPI
from .store import MockCredentialStore

__all__ = [
    "CallLog",
    "MockCredentialStore",
    "MockOrganizationAPI",
    "RecordedCall",
    "make_spec",
]
