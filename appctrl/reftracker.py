"""
Reference tracking between Apps and the Secrets/ConfigMaps they read.

compute_refs() derives the references from an App spec; AppRefTracker keeps
the reverse index used by the watch layer to decide which Apps need a
re-reconcile when a referenced object changes.
"""
import threading
from dataclasses import dataclass
from typing import Iterable, Optional

SECRET_KIND = "Secret"
CONFIGMAP_KIND = "ConfigMap"


@dataclass(frozen=True, order=True)
class RefKey:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


def _ref_name(ref: Optional[dict]) -> Optional[str]:
    if not ref:
        return None
    return ref.get("name") or None


def _add(refs: set, kind: str, namespace: str, ref: Optional[dict]):
    name = _ref_name(ref)
    if name:
        refs.add(RefKey(kind, namespace, name))


def _fetch_refs(fetch: dict, namespace: str, refs: set):
    inline = fetch.get("inline") or {}
    for source in inline.get("pathsFrom") or []:
        _add(refs, SECRET_KIND, namespace, source.get("secretRef"))
        _add(refs, CONFIGMAP_KIND, namespace, source.get("configMapRef"))

    for kind in ("image", "http", "git", "imgpkgBundle"):
        _add(refs, SECRET_KIND, namespace, (fetch.get(kind) or {}).get("secretRef"))

    repository = (fetch.get("helmChart") or {}).get("repository") or {}
    _add(refs, SECRET_KIND, namespace, repository.get("secretRef"))


def _template_refs(template: dict, namespace: str, refs: set):
    for kind in ("ytt", "helmTemplate", "cue", "sops"):
        step = template.get(kind) or {}
        for source in step.get("valuesFrom") or []:
            _add(refs, SECRET_KIND, namespace, source.get("secretRef"))
            _add(refs, CONFIGMAP_KIND, namespace, source.get("configMapRef"))
        # ytt also accepts inline paths sourced from secrets/configmaps
        for source in (step.get("inline") or {}).get("pathsFrom") or []:
            _add(refs, SECRET_KIND, namespace, source.get("secretRef"))
            _add(refs, CONFIGMAP_KIND, namespace, source.get("configMapRef"))


def compute_refs(app: dict) -> set[RefKey]:
    """
    Return every Secret/ConfigMap the App's fetch, template and cluster
    configuration depends on. Pure: the same spec always yields the same set.
    """
    namespace = app.get("metadata", {}).get("namespace", "")
    spec = app.get("spec") or {}
    refs: set[RefKey] = set()

    for fetch in spec.get("fetch") or []:
        _fetch_refs(fetch, namespace, refs)
    for template in spec.get("template") or []:
        _template_refs(template, namespace, refs)

    cluster = spec.get("cluster") or {}
    _add(refs, SECRET_KIND, namespace, cluster.get("kubeconfigSecretRef"))

    return refs


class AppRefTracker:
    """Thread-safe index from a referenced object to the Apps that use it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._apps_by_ref: dict[RefKey, set[RefKey]] = {}
        self._refs_by_app: dict[RefKey, set[RefKey]] = {}

    def reconcile_refs(self, refs: Iterable[RefKey], app_key: RefKey) -> tuple[set[RefKey], set[RefKey]]:
        """Replace the tracked refs of an App; returns (added, removed)."""
        new_refs = set(refs)
        with self._lock:
            old_refs = self._refs_by_app.get(app_key, set())
            added = new_refs - old_refs
            removed = old_refs - new_refs

            for ref in removed:
                self._unlink(ref, app_key)
            for ref in added:
                self._apps_by_ref.setdefault(ref, set()).add(app_key)

            if new_refs:
                self._refs_by_app[app_key] = new_refs
            else:
                self._refs_by_app.pop(app_key, None)

        return added, removed

    def remove_refs_for_app(self, app_key: RefKey):
        with self._lock:
            for ref in self._refs_by_app.pop(app_key, set()):
                self._unlink(ref, app_key)

    def apps_for_ref(self, ref: RefKey) -> set[RefKey]:
        with self._lock:
            return set(self._apps_by_ref.get(ref, set()))

    def refs_for_app(self, app_key: RefKey) -> set[RefKey]:
        with self._lock:
            return set(self._refs_by_app.get(app_key, set()))

    def _unlink(self, ref: RefKey, app_key: RefKey):
        apps = self._apps_by_ref.get(ref)
        if apps is None:
            return
        apps.discard(app_key)
        if not apps:
            del self._apps_by_ref[ref]
