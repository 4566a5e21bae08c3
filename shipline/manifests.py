"""
Loading of manifests and pipeline definition files.

Manifest paths may be single YAML files or directories of ``*.yaml``/``*.yml``
files; each file may hold several ``---`` separated documents. A pipeline
definition file (YAML or JSON) lists the artifacts, secrets and ingress of
a deployment:

    ingress: ingress-service
    artifacts:
      - name: client
        context: ./client
        test_command: ["npm", "test", "--", "--coverage"]
    secrets:
      - name: pgpassword
        env: {PGPASSWORD: PGPASSWORD}
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml
from pydantic import SecretStr

from .models import Artifact, ClusterResource, PipelineRequest, Revision, SecretSpec

logger = logging.getLogger("shipline.manifests")

_KIND_ORDER = {
    "Namespace": 0,
    "Secret": 1,
    "ConfigMap": 1,
    "PersistentVolumeClaim": 2,
    "Service": 3,
    "Deployment": 4,
    "Ingress": 5,
}


def _manifest_files(path: Path) -> List[Path]:
    if path.is_dir():
        return sorted(p for p in path.iterdir() if p.suffix in (".yaml", ".yml", ".json"))
    if not path.exists():
        raise FileNotFoundError(f"Manifest path '{path}' not found")
    return [path]


def load_manifests(paths: Iterable[str]) -> List[ClusterResource]:
    """
    Load every manifest document under ``paths``.

    Documents are returned with Ingresses last so that routing is declared
    after the Services it points at; the order is otherwise stable.

    Raises:
        FileNotFoundError: A path does not exist
        ValueError: A document is not a valid Kubernetes object
    """
    resources = []
    for raw_path in paths:
        for file in _manifest_files(Path(raw_path)):
            with open(file, "r", encoding="utf-8") as f:
                try:
                    documents = list(yaml.safe_load_all(f))
                except yaml.YAMLError as e:
                    raise ValueError(f"Invalid YAML in manifest '{file}': {e}")
            for doc in documents:
                if not doc:
                    continue
                try:
                    resources.append(ClusterResource.from_manifest(doc))
                except ValueError as e:
                    raise ValueError(f"Invalid manifest in '{file}': {e}")
    resources.sort(key=lambda r: _KIND_ORDER.get(r.kind, 3))
    logger.debug(f"Loaded {len(resources)} manifests")
    return resources


def resolve_secret_env(
    secrets: List[SecretSpec], environ: Optional[Mapping[str, str]] = None
) -> List[SecretSpec]:
    """Fill each secret's ``env`` references from the environment."""
    environ = os.environ if environ is None else environ
    resolved = []
    for secret in secrets:
        values = dict(secret.values)
        for key, var in secret.env.items():
            if var not in environ:
                raise ValueError(
                    f"Environment variable {var} required by secret '{secret.name}' is not set"
                )
            values[key] = SecretStr(environ[var])
        resolved.append(SecretSpec(name=secret.name, values=values))
    return resolved


def apply_registry(artifacts: List[Artifact], registry: Optional[str]) -> List[Artifact]:
    """
    Publish artifacts that still use their bare name under ``registry``.

    An artifact whose repository was defaulted to its name has no explicit
    repository; anything else is left alone.
    """
    if not registry:
        return artifacts
    prefix = registry.rstrip("/")
    for artifact in artifacts:
        if artifact.repository == artifact.name:
            artifact.repository = f"{prefix}/{artifact.name}"
    return artifacts


def load_pipeline_file(
    config_path: str,
    revision: Revision,
    manifests: Iterable[str] = (),
    registry: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    concurrent_rollout: bool = False,
    resolve_secrets: bool = True,
) -> PipelineRequest:
    """
    Build a PipelineRequest from a pipeline definition file.

    Artifacts without an explicit ``repository`` are published under
    ``<registry>/<name>`` when a registry prefix is given. With
    ``resolve_secrets=False`` secret ``env`` references are kept for the
    process that runs the pipeline to resolve.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Pipeline file '{config_path}' not found")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid pipeline file '{config_path}': {e}")

    base = Path(config_path).parent
    artifacts = []
    for raw in data.get("artifacts") or []:
        raw = dict(raw)
        if registry and not raw.get("repository"):
            raw["repository"] = f"{registry.rstrip('/')}/{raw['name']}"
        context = Path(raw.get("context", "."))
        if not context.is_absolute():
            raw["context"] = str(base / context)
        artifacts.append(raw)

    secrets = [SecretSpec(**s) for s in data.get("secrets") or []]
    if resolve_secrets:
        secrets = resolve_secret_env(secrets, environ)
    declared = [
        m if Path(m).is_absolute() else str(base / m) for m in data.get("manifests") or []
    ]
    resources = load_manifests(list(manifests) + declared)
    return PipelineRequest(
        revision=revision,
        artifacts=artifacts,
        resources=resources,
        secrets=secrets,
        ingress_name=data.get("ingress", "ingress-service"),
        concurrent_rollout=concurrent_rollout or bool(data.get("concurrent_rollout")),
    )


def current_commit(cwd: Optional[str] = None) -> str:
    """Return the HEAD commit SHA of the repository at ``cwd``."""
    try:
        out = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError) as e:
        raise ValueError(f"Cannot determine the source revision: {e}")
    return out.stdout.strip()
