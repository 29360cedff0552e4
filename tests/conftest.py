"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for atlas_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from atlas_mock import CallLog, MockCredentialStore, MockOrganizationAPI, make_spec  # noqa: E402

from org_operator.config import Config  # noqa: E402
from org_operator.models import OrganizationSpec  # noqa: E402

PROVIDER_CONFIG_YAML = """\
apiVersion: atlas-operator.io/v1alpha1
kind: ProviderConfig
metadata:
  name: default
spec:
  credentials:
    source: AWS
    secretsManager:
      region: us-east-1
      secretName: root/atlas
"""


@pytest.fixture
def spec() -> OrganizationSpec:
    return make_spec()


@pytest.fixture
def calls() -> CallLog:
    return CallLog()


@pytest.fixture
def organizations(calls: CallLog) -> MockOrganizationAPI:
    return MockOrganizationAPI(calls, id_sequence=["org-42"])


@pytest.fixture
def store(calls: CallLog) -> MockCredentialStore:
    return MockCredentialStore(calls)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Valid configuration rooted in a temporary directory."""
    specs_dir = tmp_path / "specs"
    specs_dir.mkdir()
    provider_config_path = tmp_path / "provider-config.yaml"
    provider_config_path.write_text(PROVIDER_CONFIG_YAML)
    return Config(
        specs_dir=specs_dir,
        state_dir=tmp_path / "state",
        provider_config_path=provider_config_path,
        secret_namespace="ns",
    )
