"""Activation manager: stages site archives and swaps them live.

Directory layout per site (see ``SiteLayout``)::

    <deploy_path>/<siteId>/new       staged content, not yet live
    <deploy_path>/<siteId>/current   live content, what the backend serves
    <deploy_path>/<siteId>/old       previous live content during a swap
    <deploy_path>/<siteId>/.policy   last activation policy used

Two policies are supported:

- ``atomic_swap`` (default): stage into ``new``, rename ``current`` to
  ``old``, rename ``new`` to ``current``. A failed rename is rolled back so a
  reported failure always leaves the previous ``current`` serving.
- ``full_replace``: delete the whole site root, then extract straight into
  ``current``. While extracting there is no live directory, and a failure
  mid-extraction leaves the site empty. Callers opting into it accept that.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import uuid
import weakref
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set

import structlog
from prometheus_client import Counter

from sirka_agent.audit.log import AuditLog
from sirka_agent.core.exceptions import (
    ActivationError,
    ArchiveError,
    BackendActivationError,
    PermissionAdjustmentWarning,
    SiteAgentError,
)
from sirka_agent.deploy.fetch import ArtifactSource
from sirka_agent.deploy.models import (
    ActivationPolicy,
    ActivationResult,
    ActivationState,
    DeploymentRequest,
    DeployStage,
    Site,
    SiteLayout,
)
from sirka_agent.deploy.stager import ArchiveStager

if TYPE_CHECKING:
    from sirka_agent.backends.base import RuntimeBackend

logger = structlog.get_logger()

DEPLOYMENTS_TOTAL = Counter(
    "sirka_deployments_total",
    "Site deployments by outcome",
    ["backend", "outcome"],
)


class ActivationManager:
    """Owns every site's directory tree and the swap between versions.

    Every deploy outcome is counted and, when an ``AuditLog`` is given,
    audited here rather than by the caller, so an activation that outlives
    a cancelled caller is still recorded.

    Site locks live only while some deploy or restart holds or awaits them.
    ``_states`` keeps one enum per site ever activated by this process.
    """

    def __init__(
        self,
        deploy_path: Path,
        backend: RuntimeBackend,
        *,
        source: Optional[ArtifactSource] = None,
        stager: Optional[ArchiveStager] = None,
        default_policy: ActivationPolicy = ActivationPolicy.ATOMIC_SWAP,
        site_owner: Optional[str] = None,
        audit_log: Optional[AuditLog] = None,
    ):
        self.deploy_path = Path(deploy_path)
        self.backend = backend
        self.source = source or ArtifactSource()
        self.stager = stager or ArchiveStager()
        self.default_policy = default_policy
        self.site_owner = site_owner
        self.audit_log = audit_log

        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._states: Dict[str, ActivationState] = {}
        self._detached: Set[asyncio.Future] = set()

    def layout(self, site_id: str) -> SiteLayout:
        return SiteLayout(self.deploy_path / site_id)

    def state(self, site_id: str) -> ActivationState:
        return self._states.get(site_id, ActivationState.IDLE)

    def _lock(self, site_id: str) -> asyncio.Lock:
        return self._locks.setdefault(site_id, asyncio.Lock())

    def _set_state(self, site_id: str, state: ActivationState) -> None:
        self._states[site_id] = state
        logger.debug("Activation state", site_id=site_id, state=state.value)

    async def deploy(self, request: DeploymentRequest) -> ActivationResult:
        """Resolve the request's artifact and activate it."""
        site = request.site
        try:
            archive = await self.source.resolve(request.artifact)
        except SiteAgentError as e:
            await self._record(site, error=e)
            raise
        return await self.activate(site, archive, request.policy)

    async def activate(
        self,
        site: Site,
        archive: bytes,
        policy: Optional[ActivationPolicy] = None,
    ) -> ActivationResult:
        """Stage ``archive`` for ``site`` and make it live.

        Runs in a shielded task: once started, a cancelled caller does not
        interrupt the swap, it only stops waiting for it.
        """
        policy = policy or self.default_policy
        task = asyncio.ensure_future(self._activate_recorded(site, archive, policy))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            self._detached.add(task)
            task.add_done_callback(partial(self._finish_detached, site.siteId))
            raise

    async def _activate_recorded(self, site: Site, archive: bytes, policy: ActivationPolicy) -> ActivationResult:
        try:
            result = await self._activate_locked(site, archive, policy)
        except Exception as e:
            await self._record(site, error=e)
            raise
        await self._record(site, result=result)
        return result

    async def _record(
        self,
        site: Site,
        result: Optional[ActivationResult] = None,
        error: Optional[BaseException] = None,
    ) -> None:
        runtime = self.backend.kind.value
        outcome = "success" if error is None else error.__class__.__name__
        DEPLOYMENTS_TOTAL.labels(backend=runtime, outcome=outcome).inc()
        if self.audit_log is None:
            return
        if error is None:
            await self.audit_log.log(
                action="deploy",
                siteId=site.siteId,
                siteName=site.siteName,
                status="success",
                runtime=runtime,
                domain=result.domain if result else site.domain,
            )
        else:
            await self.audit_log.log(
                action="deploy",
                siteId=site.siteId,
                siteName=site.siteName,
                status="failed",
                runtime=runtime,
                stage=getattr(error, "stage", None),
                contentChanged=getattr(error, "content_changed", False),
                error=str(error),
            )

    def _finish_detached(self, site_id: str, task: asyncio.Future) -> None:
        """Collect the outcome of an activation whose caller went away."""
        self._detached.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            logger.info("Activation finished after caller cancelled", site_id=site_id)
            return
        logger.error(
            "Activation failed after caller cancelled",
            site_id=site_id,
            error=str(error),
            stage=getattr(error, "stage", None),
            content_changed=getattr(error, "content_changed", False),
        )

    async def _activate_locked(self, site: Site, archive: bytes, policy: ActivationPolicy) -> ActivationResult:
        log = logger.bind(site_id=site.siteId, policy=policy.value, backend=self.backend.kind.value)
        loop = asyncio.get_event_loop()

        async with self._lock(site.siteId):
            log.info("Activating site", domain=site.domain)
            live = await loop.run_in_executor(None, self._swap_in, site.siteId, archive, policy)

            try:
                config = await loop.run_in_executor(None, self.backend.render_config, site, live)
                handle = await self.backend.activate(site, config, live)
            except BackendActivationError as e:
                e.stage = DeployStage.BACKEND.value
                e.content_changed = True
                log.error("Backend activation failed, new content is live", error=str(e))
                raise
            except Exception as e:
                log.error("Backend activation failed, new content is live", error=str(e))
                raise BackendActivationError(
                    f"Site content updated but backend activation failed: {e}",
                    stage=DeployStage.BACKEND.value,
                    content_changed=True,
                ) from e

        log.info("Site active", served_path=str(live), handle=handle.name)
        return ActivationResult(domain=site.domain, servedPath=str(live), backendHandle=handle)

    async def restart(self, site_id: str) -> None:
        async with self._lock(site_id):
            await self.backend.restart(site_id)

    async def list_sites(self) -> List[str]:
        return await self.backend.list_sites()

    # Blocking part; runs in one executor call so it cannot be interrupted.

    def _swap_in(self, site_id: str, archive: bytes, policy: ActivationPolicy) -> Path:
        layout = self.layout(site_id)
        self._note_policy(site_id, layout, policy)
        if policy is ActivationPolicy.FULL_REPLACE:
            live = self._full_replace(site_id, layout, archive)
        else:
            live = self._atomic_swap(site_id, layout, archive)
        self._adjust_permissions(live)
        self._record_policy(layout, policy)
        return live

    def _atomic_swap(self, site_id: str, layout: SiteLayout, archive: bytes) -> Path:
        self._set_state(site_id, ActivationState.IDLE)
        new_site = not layout.root.exists()
        try:
            layout.root.mkdir(parents=True, exist_ok=True)
            self._discard(layout.staged, "stale staging directory")
            self.stager.stage(archive, layout.staged)
        except (ArchiveError, OSError) as e:
            if new_site:
                # a first deploy that never staged leaves no trace
                shutil.rmtree(layout.root, ignore_errors=True)
            if isinstance(e, ArchiveError):
                raise
            raise ActivationError(f"Failed to stage content: {e}", stage=DeployStage.STAGE.value) from e
        self._set_state(site_id, ActivationState.STAGED)

        self._discard(layout.backup, "leftover backup")

        self._set_state(site_id, ActivationState.SWAPPING)
        had_live = layout.live.exists()
        if had_live:
            try:
                os.rename(layout.live, layout.backup)
            except OSError as e:
                self._discard(layout.staged, "staged content")
                self._set_state(site_id, ActivationState.ROLLED_BACK)
                raise ActivationError(
                    f"Failed to move live content aside: {e}",
                    stage=DeployStage.SWAP.value,
                ) from e

        try:
            os.rename(layout.staged, layout.live)
        except OSError as e:
            message = f"Failed to promote staged content: {e}"
            if had_live:
                try:
                    os.rename(layout.backup, layout.live)
                except OSError as restore_error:
                    logger.critical(
                        "Failed to restore previous live content",
                        site_id=site_id,
                        backup=str(layout.backup),
                        error=str(restore_error),
                    )
                    message += f"; restoring previous content also failed: {restore_error}"
            self._discard(layout.staged, "staged content")
            self._set_state(site_id, ActivationState.ROLLED_BACK)
            raise ActivationError(message, stage=DeployStage.SWAP.value) from e

        self._set_state(site_id, ActivationState.ACTIVE)
        self._discard(layout.backup, "previous live content")
        return layout.live

    def _full_replace(self, site_id: str, layout: SiteLayout, archive: bytes) -> Path:
        # Reject bad archives before anything is deleted
        self.stager.validate(archive, layout.live)

        self._set_state(site_id, ActivationState.SWAPPING)
        try:
            if layout.root.exists():
                shutil.rmtree(layout.root)
            layout.root.mkdir(parents=True, exist_ok=True)
            self.stager.stage(archive, layout.live)
        except ArchiveError as e:
            e.content_changed = True
            self._set_state(site_id, ActivationState.ROLLED_BACK)
            raise
        except OSError as e:
            self._set_state(site_id, ActivationState.ROLLED_BACK)
            raise ActivationError(
                f"Full replace failed, site content was removed: {e}",
                stage=DeployStage.SWAP.value,
                content_changed=True,
            ) from e
        self._set_state(site_id, ActivationState.ACTIVE)
        return layout.live

    @staticmethod
    def _discard(path: Path, what: str) -> None:
        """Best-effort removal. Anything that cannot be deleted is renamed
        aside so it never occupies a role name."""
        if not (path.exists() or path.is_symlink()):
            return
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            return
        except OSError as e:
            logger.warning("Cleanup failed", what=what, path=str(path), error=str(e))
        aside = path.with_name(f"{path.name}.stale-{uuid.uuid4().hex[:8]}")
        try:
            os.rename(path, aside)
            logger.warning("Moved undeletable directory aside", what=what, path=str(aside))
        except OSError as e:
            logger.error("Could not move directory aside", what=what, path=str(path), error=str(e))

    def _adjust_permissions(self, live: Path) -> None:
        user, _, group = (self.site_owner or "").partition(":")
        failures = 0
        last_error = None
        for dirpath, dirnames, filenames in os.walk(live):
            entries = [(dirpath, 0o755)]
            entries += [(os.path.join(dirpath, d), 0o755) for d in dirnames]
            entries += [(os.path.join(dirpath, f), 0o644) for f in filenames]
            for path, mode in entries:
                try:
                    os.chmod(path, mode)
                    if user:
                        shutil.chown(path, user=user, group=group or None)
                except (OSError, LookupError) as e:
                    failures += 1
                    last_error = e
        if failures:
            logger.warning(
                "Permission adjustment failed",
                category=PermissionAdjustmentWarning.__name__,
                path=str(live),
                failures=failures,
                error=str(last_error),
            )

    @staticmethod
    def _note_policy(site_id: str, layout: SiteLayout, policy: ActivationPolicy) -> None:
        try:
            previous = layout.policy_marker.read_text(encoding="utf-8").strip()
        except OSError:
            return
        if previous and previous != policy.value:
            logger.warning(
                "Activation policy changed for site",
                site_id=site_id,
                previous=previous,
                requested=policy.value,
            )

    @staticmethod
    def _record_policy(layout: SiteLayout, policy: ActivationPolicy) -> None:
        try:
            layout.policy_marker.write_text(policy.value + "\n", encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to record activation policy", path=str(layout.policy_marker), error=str(e))
