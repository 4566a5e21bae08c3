import os
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from shipline.manifests import (
    apply_registry,
    current_commit,
    load_manifests,
    load_pipeline_file,
    resolve_secret_env,
)
from shipline.models import Artifact, Revision, SecretSpec

DEPLOYMENT = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: server-deployment
spec:
  replicas: 3
  template:
    spec:
      containers:
        - name: server
          image: acme/multi-server
"""

SERVICES = """\
apiVersion: v1
kind: Service
metadata:
  name: server-cluster-ip-service
spec:
  ports:
    - port: 5000
---
apiVersion: v1
kind: Service
metadata:
  name: client-cluster-ip-service
spec:
  ports:
    - port: 3000
"""

INGRESS = """\
apiVersion: networking.k8s.io/v1
kind: Ingress
metadata:
  name: ingress-service
"""

PIPELINE = """\
ingress: ingress-service
manifests:
  - k8s
artifacts:
  - name: client
    context: ./client
    test_command: ["npm", "test", "--", "--coverage"]
  - name: server
    context: ./server
    repository: ghcr.io/acme/server
secrets:
  - name: pgpassword
    env:
      PGPASSWORD: PGPASSWORD
"""


class TestLoadManifests:
    """Test reading manifest files and directories."""

    def test_directory_with_multi_document_files(self, tmp_path):
        (tmp_path / "a-ingress.yaml").write_text(INGRESS)
        (tmp_path / "b-services.yml").write_text(SERVICES)
        (tmp_path / "c-deployment.yaml").write_text(DEPLOYMENT)
        (tmp_path / "README.md").write_text("not a manifest")

        resources = load_manifests([str(tmp_path)])

        assert [r.display_name for r in resources] == [
            "service/server-cluster-ip-service",
            "service/client-cluster-ip-service",
            "deployment/server-deployment",
            "ingress/ingress-service",
        ]

    def test_single_file_and_empty_documents(self, tmp_path):
        path = tmp_path / "deploy.yaml"
        path.write_text("---\n" + DEPLOYMENT + "---\n")
        resources = load_manifests([str(path)])
        assert len(resources) == 1
        assert resources[0].spec["spec"]["replicas"] == 3

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_manifests([str(tmp_path / "missing.yaml")])

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("kind: [unclosed\n")
        with pytest.raises(ValueError):
            load_manifests([str(path)])

    def test_document_without_kind(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("metadata:\n  name: x\n")
        with pytest.raises(ValueError) as exc_info:
            load_manifests([str(path)])
        assert "bad.yaml" in str(exc_info.value)


class TestResolveSecretEnv:
    def test_reads_environment(self):
        secrets = [SecretSpec(name="pgpassword", env={"PGPASSWORD": "PGPASSWORD"})]
        resolved = resolve_secret_env(secrets, {"PGPASSWORD": "s3cret"})
        assert resolved[0].values["PGPASSWORD"].get_secret_value() == "s3cret"
        assert resolved[0].env == {}

    def test_missing_variable(self):
        secrets = [SecretSpec(name="pgpassword", env={"PGPASSWORD": "PGPASSWORD"})]
        with pytest.raises(ValueError) as exc_info:
            resolve_secret_env(secrets, {})
        assert "PGPASSWORD" in str(exc_info.value)


class TestApplyRegistry:
    def test_prefixes_only_defaulted_repositories(self):
        artifacts = [Artifact(name="client"), Artifact(name="server", repository="ghcr.io/acme/server")]
        apply_registry(artifacts, "docker.io/acme/")
        assert [a.repository for a in artifacts] == ["docker.io/acme/client", "ghcr.io/acme/server"]

    def test_no_registry(self):
        artifacts = apply_registry([Artifact(name="client")], None)
        assert artifacts[0].repository == "client"


class TestLoadPipelineFile:
    """Test building a PipelineRequest from a definition file."""

    def setup_method(self):
        self.revision = Revision(id="abc123")

    def _write(self, tmp_path):
        k8s = tmp_path / "k8s"
        k8s.mkdir()
        (k8s / "deployment.yaml").write_text(DEPLOYMENT)
        (k8s / "ingress.yaml").write_text(INGRESS)
        config = tmp_path / "shipline.yaml"
        config.write_text(PIPELINE)
        return config

    def test_loads_request(self, tmp_path):
        config = self._write(tmp_path)

        request = load_pipeline_file(
            str(config), self.revision, registry="docker.io/acme/", environ={"PGPASSWORD": "pw"}
        )

        client, server = request.artifacts
        assert client.repository == "docker.io/acme/client"
        assert client.context == os.path.join(str(tmp_path), "client")
        assert client.test_command == ["npm", "test", "--", "--coverage"]
        assert server.repository == "ghcr.io/acme/server"
        assert [r.kind for r in request.resources] == ["Deployment", "Ingress"]
        assert request.secrets[0].values["PGPASSWORD"].get_secret_value() == "pw"
        assert request.ingress_name == "ingress-service"
        assert request.concurrent_rollout is False

    def test_extra_manifests_and_concurrency(self, tmp_path):
        config = self._write(tmp_path)
        extra = tmp_path / "services.yaml"
        extra.write_text(SERVICES)

        request = load_pipeline_file(
            str(config),
            self.revision,
            manifests=[str(extra)],
            environ={"PGPASSWORD": "pw"},
            concurrent_rollout=True,
        )

        assert len(request.resources) == 4
        assert request.concurrent_rollout is True

    def test_unresolved_secrets_kept(self, tmp_path):
        config = self._write(tmp_path)
        request = load_pipeline_file(str(config), self.revision, resolve_secrets=False)
        assert request.secrets[0].env == {"PGPASSWORD": "PGPASSWORD"}
        assert request.secrets[0].values == {}

    def test_missing_secret_variable(self, tmp_path):
        config = self._write(tmp_path)
        with pytest.raises(ValueError):
            load_pipeline_file(str(config), self.revision, environ={})

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_pipeline_file(str(tmp_path / "nope.yaml"), self.revision)


class TestCurrentCommit:
    def test_returns_head(self):
        completed = subprocess.CompletedProcess(["git"], 0, stdout="abc123\n", stderr="")
        with patch("shipline.manifests.subprocess.run", return_value=completed) as mock_run:
            assert current_commit("/src") == "abc123"
        assert mock_run.call_args[1]["cwd"] == "/src"

    def test_not_a_repository(self):
        error = subprocess.CalledProcessError(128, ["git"], stderr="not a git repository")
        with patch("shipline.manifests.subprocess.run", side_effect=error):
            with pytest.raises(ValueError):
                current_commit("/tmp")


class TestBundledDefinition:
    """The sample definition under deploy/ stays loadable."""

    def test_loads_six_resources(self):
        config = Path(__file__).resolve().parent.parent / "deploy" / "shipline.yaml"
        request = load_pipeline_file(
            str(config), Revision(id="abc123"), environ={"PGPASSWORD": "pw"}
        )
        assert [a.name for a in request.artifacts] == ["client", "server", "worker"]
        assert len(request.resources) == 6
        assert request.resources[-1].display_name == "ingress/ingress-service"
        assert [t.deployment for t in request.rollout_targets()] == [
            "client-deployment", "server-deployment", "worker-deployment",
        ]
