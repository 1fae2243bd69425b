"""Tests for desired state validation."""

from pathlib import Path

import pytest

from helmsman.config import Options
from helmsman.exceptions import ValidationException
from helmsman.state import Hooks, Namespace, Release, Settings, State
from helmsman.validate import Validator, check_unique


@pytest.fixture(name="chart_dir")
def chart_dir_fixture(testdata: Path) -> str:
    return str((testdata / "charts/demo").resolve())


def valid_state() -> State:
    return State(
        settings=Settings(kube_context="minikube"),
        namespaces={"staging": Namespace()},
        helm_repos={"stable": "https://charts.example.com/stable"},
        apps={
            "jenkins": Release(
                name="jenkins",
                namespace="staging",
                enabled=True,
                chart="stable/jenkins",
                version="0.9.0",
            )
        },
    )


def validate(state: State, **kwargs: object) -> None:
    Validator(Options(**kwargs)).validate(state)  # type: ignore[arg-type]


def test_valid_state() -> None:
    """Test a minimal valid desired state."""
    validate(valid_state())


def test_local_chart(chart_dir: str) -> None:
    """Test a local chart directory is accepted without a repository."""
    state = valid_state()
    state.apps["jenkins"].chart = chart_dir
    validate(state)


def test_oci_chart() -> None:
    """Test OCI charts don't need a repository."""
    state = valid_state()
    state.apps["jenkins"].chart = "oci://registry.example.com/charts/jenkins"
    validate(state)


def test_duplicate_release() -> None:
    """Test a release name can only be used once per namespace."""
    state = valid_state()
    state.apps["other"] = Release(
        name="jenkins",
        namespace="staging",
        chart="stable/jenkins",
        version="0.9.0",
    )
    with pytest.raises(ValidationException, match="unique within a given namespace"):
        validate(state)


def test_duplicate_release_checked_in_destroy() -> None:
    """Test uniqueness is checked even when validation is skipped."""
    state = valid_state()
    state.apps["other"] = Release(name="jenkins", namespace="staging")
    with pytest.raises(ValidationException, match="unique"):
        validate(state, destroy=True)
    with pytest.raises(ValidationException, match="unique"):
        check_unique(state)


def test_skip_validation() -> None:
    """Test invalid apps pass when validation is skipped."""
    state = valid_state()
    state.apps["jenkins"].version = ""
    validate(state, skip_validation=True)


def test_undefined_namespace() -> None:
    """Test releases must use a declared namespace."""
    state = valid_state()
    state.apps["jenkins"].namespace = "production"
    with pytest.raises(ValidationException, match=r"namespace \[ production \]"):
        validate(state)


def test_kube_system_namespace() -> None:
    """Test kube-system doesn't need to be declared."""
    state = valid_state()
    state.apps["jenkins"].namespace = "kube-system"
    validate(state)


def test_ns_override() -> None:
    """Test the override namespace doesn't need to be declared."""
    state = valid_state()
    state.namespaces = {}
    state.apps["jenkins"].namespace = "sandbox"
    validate(state, ns_override="sandbox")


def test_no_namespaces() -> None:
    """Test at least one namespace is required."""
    state = valid_state()
    state.namespaces = {}
    state.apps = {}
    with pytest.raises(ValidationException, match="at least one namespace"):
        validate(state)


def test_unknown_repository() -> None:
    """Test remote charts must use a declared repository."""
    state = valid_state()
    state.apps["jenkins"].chart = "incubator/jenkins"
    with pytest.raises(ValidationException, match="helmRepos"):
        validate(state)


def test_preconfigured_repository() -> None:
    """Test preconfigured repositories are accepted."""
    state = valid_state()
    state.apps["jenkins"].chart = "incubator/jenkins"
    state.preconfigured_helm_repos = ["incubator"]
    validate(state)


def test_missing_version() -> None:
    """Test a release needs a version."""
    state = valid_state()
    state.apps["jenkins"].version = ""
    with pytest.raises(ValidationException, match="version can't be empty"):
        validate(state)


def test_positive_priority() -> None:
    """Test priorities can't be positive."""
    state = valid_state()
    state.apps["jenkins"].priority = 1
    with pytest.raises(ValidationException, match="priority"):
        validate(state)


def test_values_file_and_files() -> None:
    """Test valuesFile and valuesFiles are exclusive."""
    state = valid_state()
    state.apps["jenkins"].values_file = "a.yaml"
    state.apps["jenkins"].values_files = ["b.yaml"]
    with pytest.raises(ValidationException, match="should not be used together"):
        validate(state)


def test_missing_values_file(tmp_path: Path) -> None:
    """Test values files must exist."""
    state = valid_state()
    state.apps["jenkins"].values_file = str(tmp_path / "missing.yaml")
    with pytest.raises(ValidationException, match="missing.yaml"):
        validate(state)


def test_values_file_extension(tmp_path: Path) -> None:
    """Test values files must be yaml or json."""
    values = tmp_path / "values.txt"
    values.write_text("a: b")
    state = valid_state()
    state.apps["jenkins"].values_file = str(values)
    with pytest.raises(ValidationException, match="file formats"):
        validate(state)


def test_exec_hook(tmp_path: Path) -> None:
    """Test executable hooks must be found."""
    state = valid_state()
    state.apps["jenkins"].hooks = Hooks(pre_install="helmsman-test-missing-binary")
    with pytest.raises(ValidationException, match="can't be found as an executable"):
        validate(state)
    state.apps["jenkins"].hooks = Hooks(pre_install="sh -c true")
    validate(state)


def test_missing_kube_context() -> None:
    """Test a context is needed when kubectl has none."""
    state = valid_state()
    state.settings.kube_context = None
    with pytest.raises(ValidationException, match="kubeContext"):
        Validator(Options(), has_kube_context=False).validate(state)
    Validator(Options(), has_kube_context=True).validate(state)


def test_cluster_uri_requires_credentials() -> None:
    """Test connecting to a cluster needs credentials and certificates."""
    state = valid_state()
    state.settings.cluster_uri = "https://k8s.example.com"
    with pytest.raises(ValidationException) as exc_info:
        validate(state)
    message = str(exc_info.value)
    assert "username needs to be provided" in message
    assert "no certificates stanza provided" in message


def test_bearer_token_without_cluster() -> None:
    """Test a bearer token needs a cluster URI."""
    state = valid_state()
    state.settings.bearer_token = True
    with pytest.raises(ValidationException, match="no cluster URI"):
        validate(state)


def test_certificates(tmp_path: Path) -> None:
    """Test certificates must be local files or bucket URLs."""
    ca = tmp_path / "ca.crt"
    ca.write_text("cert")
    state = valid_state()
    state.certificates = {"caCrt": str(ca), "caKey": "s3://bucket/ca.key"}
    validate(state)
    state.certificates["caClient"] = "missing.crt"
    with pytest.raises(ValidationException, match="caClient"):
        validate(state)


def test_repo_url() -> None:
    """Test repositories need a valid URL."""
    state = valid_state()
    state.helm_repos["broken"] = "not a url"
    with pytest.raises(ValidationException, match=r"repo \[ broken \]"):
        validate(state)


def test_eyaml_key_pair() -> None:
    """Test eyaml keys are given together."""
    state = valid_state()
    state.settings.eyaml_private_key_path = "private.pem"
    with pytest.raises(ValidationException, match="EyamlPublicKeyPath"):
        validate(state)


def test_sections_reported_together() -> None:
    """Test independent sections each report their first error."""
    state = valid_state()
    state.settings.slack_webhook = "not-a-url"
    state.helm_repos["broken"] = "nope"
    state.apps["jenkins"].version = ""
    with pytest.raises(ValidationException) as exc_info:
        validate(state)
    lines = str(exc_info.value).splitlines()
    assert len(lines) == 3
    assert lines[0].startswith("settings validation failed")
    assert lines[1].startswith("repos validation failed")
    assert lines[2].startswith("apps validation failed")
