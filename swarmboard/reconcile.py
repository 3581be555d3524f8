"""
Three-way category reconciliation between the app's store and one backend.

1. Import: backend groupings the app doesn't know become app categories,
   linked by the backend's id. A grouping already linked by id is never
   imported again, even if it was renamed on the backend.
2. Push: app categories with no link on this backend are created there and
   the returned id linked.
3. Update: linked groupings whose attributes differ from the app's are
   overwritten with the app's values, then read back to verify.

The app is authoritative. Running a pass twice against an unchanged backend
creates and updates nothing the second time.
"""
import logging
from dataclasses import asdict, dataclass, field

from .categories import DEFAULT_CATEGORY
from .errors import SwarmBoardError

log = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    imported: list = field(default_factory=list)
    linked: list = field(default_factory=list)
    pushed: list = field(default_factory=list)
    updated: list = field(default_factory=list)
    mismatches: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)

    def as_dict(self) -> dict:
        return asdict(self)


def _match_label(ops, snapshot, grouping):
    # Deluge lowercases labels, so "TV" in the app is "tv" on the backend
    for name, category in snapshot.entries():
        if name != DEFAULT_CATEGORY and ops.grouping_id_for_name(name) == grouping.id:
            return category
    return None


async def reconcile(manager, store) -> ReconcileReport:
    async with store.lock:
        return await _reconcile(manager, store)


async def _reconcile(manager, store) -> ReconcileReport:
    instance_id = manager.instance_id
    ops = manager.ops
    client = manager._require_client()
    report = ReconcileReport()
    default_path = store.get_client_default_path(instance_id)

    groupings = await ops.list_groupings(client)
    snapshot = store.get_categories_snapshot()
    pending_updates = []

    # Phase 1: import / link
    for grouping in groupings:
        if grouping.id == ops.default_grouping_id:
            linked = snapshot.get_by_external_id(instance_id, grouping.id)
            if linked is None or linked.name != DEFAULT_CATEGORY:
                if linked is not None:
                    manager.log.info(f"[SYNC] Moving stale link {linked.name} -> {DEFAULT_CATEGORY}")
                store.link_external_id(DEFAULT_CATEGORY, instance_id, grouping.id)
                report.linked.append(DEFAULT_CATEGORY)
            continue

        category = snapshot.get_by_external_id(instance_id, grouping.id)
        if category is None:
            category = snapshot.get_by_name(grouping.name) or _match_label(ops, snapshot, grouping)
            if category is not None:
                current = category.external_ids.get(instance_id)
                if current is not None and current != grouping.id:
                    # Linked to another grouping already; that one wins
                    manager.log.warning(
                        f"[SYNC] {grouping.name} on backend shadows linked category {category.name}, ignoring")
                    continue
                store.link_external_id(category.name, instance_id, grouping.id)
                report.linked.append(category.name)
            else:
                if store.get_by_name(grouping.name) is not None:
                    continue
                store.import_category(
                    name=grouping.name,
                    path=grouping.path or None,
                    comment=grouping.comment,
                    color=grouping.color,
                    priority=grouping.priority,
                    external_ids={instance_id: grouping.id},
                )
                report.imported.append(grouping.name)
                manager.log.info(f"[SYNC] Imported {grouping.name} from {manager.display_name}")
                continue

        diffs = ops.grouping_diffs(grouping, category, default_path)
        if diffs:
            pending_updates.append((category.name, grouping.id, diffs))

    if report.imported or report.linked:
        manager.log.info(
            f"[SYNC] Imported {len(report.imported)}, linked {len(report.linked)} categories")
        await store.save()

    # Phase 2: push
    for category in store.get_categories_snapshot().get_unlinked_for(instance_id):
        try:
            grouping_id = await ops.create_grouping(client, category, default_path)
        except SwarmBoardError as e:
            manager.log.error(f"[SYNC] Failed to create {category.name}: {e}")
            report.errors.append({'category': category.name, 'error': str(e)})
            continue
        if grouping_id is None:
            continue
        store.link_external_id(category.name, instance_id, grouping_id)
        report.pushed.append(category.name)

    if report.pushed:
        manager.log.info(f"[SYNC] Pushed {len(report.pushed)} categories")
        await store.save()

    # Phase 3: update
    for name, grouping_id, diffs in pending_updates:
        category = store.get_by_name(name)
        if category is None:
            continue
        manager.log.info(f"[SYNC] Updating {name} on backend ({', '.join(diffs)})")
        try:
            result = await ops.update_grouping(client, grouping_id, category, default_path)
        except SwarmBoardError as e:
            manager.log.error(f"[SYNC] Failed to update {name}: {e}")
            report.errors.append({'category': name, 'error': str(e)})
            continue
        report.updated.append(name)
        if result.get('mismatches'):
            report.mismatches[name] = result['mismatches']

    return report
