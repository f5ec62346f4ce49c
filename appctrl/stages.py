"""
Stage adapter contracts for the fetch → template → deploy pipeline.

The engine only depends on the Fetcher/Templater/Deployer protocols. Two
minimal adapters ship here: InlineFetcher (spec.fetch[].inline) and
PassthroughTemplater (concatenates fetched YAML). git/http/image fetchers
and ytt/helm templating are provided by external adapters.
"""
import base64
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, Sequence

from appctrl.models import utcnow

logger = logging.getLogger("appctrl.stages")


@dataclass
class StageResult:
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    # Stage payload handed to the next stage (fetched dir, templated YAML)
    output: Any = None

    @property
    def failed(self) -> bool:
        return self.error is not None or self.exit_code != 0

    @classmethod
    def from_error(cls, err: Exception, started_at: Optional[datetime] = None) -> "StageResult":
        """Result for a stage that could not run its tool at all."""
        msg = str(err)
        return cls(exit_code=-1, stderr=msg, error=msg, started_at=started_at, updated_at=utcnow())


class Fetcher(Protocol):
    def fetch(self, app: dict, dst_dir: str) -> StageResult: ...


class Templater(Protocol):
    def template(self, app: dict, fetched_dir: str) -> StageResult: ...


class Deployer(Protocol):
    def deploy(self, app: dict, templated: str, args: Sequence[str]) -> StageResult: ...

    def delete(self, app: dict, args: Sequence[str]) -> StageResult: ...


# ---------------------------------------------------------------------------
# Inline fetch
# ---------------------------------------------------------------------------

SourceReader = Callable[[str, str, str], dict]


def read_k8s_source(kind: str, namespace: str, name: str) -> dict:
    """Return {path: content} for a Secret or ConfigMap."""
    from appctrl.services.kubernetes_service import core_api

    api = core_api()
    if kind == "Secret":
        secret = api.read_namespaced_secret(name, namespace)
        return {k: base64.b64decode(v).decode("utf-8") for k, v in (secret.data or {}).items()}
    cm = api.read_namespaced_config_map(name, namespace)
    return dict(cm.data or {})


class InlineFetcher:
    """Writes spec.fetch[].inline paths (and pathsFrom Secrets/ConfigMaps) to disk."""

    def __init__(self, read_source: SourceReader = read_k8s_source):
        self._read_source = read_source

    def fetch(self, app: dict, dst_dir: str) -> StageResult:
        started_at = utcnow()
        namespace = app.get("metadata", {}).get("namespace", "")
        sources = app.get("spec", {}).get("fetch") or []
        if not sources:
            return StageResult.from_error(ValueError("Expected at least one fetch option"), started_at)

        written = []
        try:
            for i, source in enumerate(sources):
                # Multiple sources are fetched into numbered subdirectories
                target = Path(dst_dir) if len(sources) == 1 else Path(dst_dir) / str(i)
                target.mkdir(parents=True, exist_ok=True)
                written += self._fetch_one(source, namespace, target)
        except Exception as e:
            logger.warning(f"Inline fetch failed: {e}")
            return StageResult.from_error(e, started_at)

        return StageResult(
            stdout="\n".join(written),
            started_at=started_at,
            updated_at=utcnow(),
            output=dst_dir,
        )

    def _fetch_one(self, source: dict, namespace: str, target: Path) -> list[str]:
        inline = source.get("inline")
        if inline is None:
            kinds = ", ".join(sorted(source)) or "none"
            raise ValueError(f"Unsupported fetch source ({kinds})")

        files = dict(inline.get("paths") or {})
        for path_source in inline.get("pathsFrom") or []:
            if path_source.get("secretRef"):
                ref, kind = path_source["secretRef"], "Secret"
            elif path_source.get("configMapRef"):
                ref, kind = path_source["configMapRef"], "ConfigMap"
            else:
                raise ValueError("Expected secretRef or configMapRef in inline.pathsFrom")
            prefix = ref.get("directoryPath", "")
            for path, content in self._read_source(kind, namespace, ref["name"]).items():
                files[os.path.join(prefix, path)] = content

        written = []
        for rel_path, content in sorted(files.items()):
            dst = (target / rel_path).resolve()
            if target.resolve() not in dst.parents:
                raise ValueError(f"Inline path '{rel_path}' escapes fetch directory")
            dst.parent.mkdir(parents=True, exist_ok=True)
            dst.write_text(content, encoding="utf-8")
            written.append(rel_path)
        return written


# ---------------------------------------------------------------------------
# Passthrough template
# ---------------------------------------------------------------------------

class PassthroughTemplater:
    """Concatenates every fetched YAML document, in path order, into one stream."""

    def template(self, app: dict, fetched_dir: str) -> StageResult:
        started_at = utcnow()
        root = Path(fetched_dir)
        docs = []
        for path in sorted(root.rglob("*")):
            if path.is_file() and path.suffix in (".yml", ".yaml"):
                docs.append(path.read_text(encoding="utf-8").strip())

        if not docs:
            return StageResult.from_error(ValueError("No YAML files found in fetched content"), started_at)

        return StageResult(
            started_at=started_at,
            updated_at=utcnow(),
            output="\n---\n".join(docs) + "\n",
        )
