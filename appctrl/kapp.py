"""
kapp deploy tool adapter.

User raw options are checked by the restricted flag gate in the engine
(appctrl.flags) before they are passed to this adapter.
"""
import logging
import subprocess
from typing import Optional, Sequence

from appctrl.config import settings
from appctrl.flags import Operation
from appctrl.models import utcnow
from appctrl.stages import StageResult

logger = logging.getLogger("appctrl.kapp")


def kapp_spec(app: dict) -> Optional[dict]:
    """The kapp section of spec.deploy, or None if the App does not deploy with kapp."""
    for deploy in app.get("spec", {}).get("deploy") or []:
        if "kapp" in deploy:
            return deploy["kapp"] or {}
    return None


def kapp_raw_options(app: dict, operation: Operation) -> list[str]:
    """User-supplied raw options for an operation (unchecked)."""
    kapp = kapp_spec(app) or {}
    if operation == Operation.DELETE:
        return list((kapp.get("delete") or {}).get("rawOptions") or [])
    return list(kapp.get("rawOptions") or [])


def kapp_run(args: list[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
    """Execute a kapp CLI command. Never raises on non-zero exit."""
    cmd = [settings.KAPP_BINARY] + args
    logger.info(f"kapp> {' '.join(cmd)}")
    result = subprocess.run(cmd, input=stdin, capture_output=True, text=True, timeout=settings.KAPP_TIMEOUT)
    if result.stdout:
        logger.debug(f"kapp stdout: {result.stdout[:800]}")
    if result.stderr:
        logger.warning(f"kapp stderr: {result.stderr[:800]}")
    return result


class KappDeployer:
    """Deploys templated YAML with kapp, one kapp app per reconciled resource."""

    def __init__(self, app_suffix: str = "-ctrl"):
        self.app_suffix = app_suffix

    def deploy(self, app: dict, templated: str, args: Sequence[str]) -> StageResult:
        kapp = kapp_spec(app)
        if kapp is None:
            return StageResult.from_error(ValueError("Unsupported way to deploy (expected kapp)"), utcnow())

        cmd = ["deploy", "-f", "-", "--yes", "--app-changes-max-to-keep=5"] + self._generic_args(app)
        if kapp.get("intoNs"):
            cmd.append(f"--into-ns={kapp['intoNs']}")
        for mapping in kapp.get("mapNs") or []:
            cmd.append(f"--map-ns={mapping}")
        return self._run(cmd + list(args), stdin=templated)

    def delete(self, app: dict, args: Sequence[str]) -> StageResult:
        cmd = ["delete", "--yes"] + self._generic_args(app)
        return self._run(cmd + list(args))

    def _generic_args(self, app: dict) -> list[str]:
        meta = app["metadata"]
        return ["--app", meta["name"] + self.app_suffix, "--namespace", meta["namespace"]]

    def _run(self, cmd: list[str], stdin: Optional[str] = None) -> StageResult:
        started_at = utcnow()
        try:
            r = kapp_run(cmd, stdin=stdin)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"kapp {cmd[0]} could not complete: {e}")
            return StageResult.from_error(e, started_at)

        error = None
        if r.returncode != 0:
            error = f"kapp: Error (exit status {r.returncode}): {r.stderr.strip()[:500]}"
        return StageResult(
            exit_code=r.returncode,
            stdout=r.stdout,
            stderr=r.stderr,
            error=error,
            started_at=started_at,
            updated_at=utcnow(),
        )
