"""
Application-owned categories.

The store is the single source of truth for category attributes. Each
category remembers, per backend instance, which native grouping it is linked
to (an aMule category id, a qBittorrent category name, a Deluge or
Transmission label). Reconciliation and the CRUD operations below keep the
backends in line with it.
"""
import asyncio
import json
import logging
import os
import random
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from .errors import CategoryError, SwarmBoardError

log = logging.getLogger(__name__)

DEFAULT_CATEGORY = "Default"
STORE_VERSION = 1

COLOR_PALETTE = [
    "#E57373", "#F06292", "#BA68C8", "#9575CD", "#7986CB", "#64B5F6",
    "#4FC3F7", "#4DD0E1", "#4DB6AC", "#81C784", "#AED581", "#DCE775",
    "#FFF176", "#FFD54F", "#FFB74D", "#FF8A65", "#A1887F", "#90A4AE",
]


def ec_color_to_hex(value) -> str:
    """aMule stores colors as BGR integers."""
    value = int(value or 0)
    r = value & 0xFF
    g = (value >> 8) & 0xFF
    b = (value >> 16) & 0xFF
    return f"#{r:02X}{g:02X}{b:02X}"


def hex_color_to_ec(color) -> int:
    if not color:
        return 0
    color = color.lstrip("#")
    if len(color) != 6:
        return 0
    r = int(color[0:2], 16)
    g = int(color[2:4], 16)
    b = int(color[4:6], 16)
    return (b << 16) | (g << 8) | r


def get_random_color() -> str:
    return random.choice(COLOR_PALETTE)


def translate_path(category, instance_id):
    """The path a backend should see: its own mapping, the shared path, or None."""
    return category.path_mappings.get(instance_id) or category.path or None


@dataclass
class Category:
    name: str
    path: str = None
    path_mappings: dict = field(default_factory=dict)
    comment: str = ""
    color: str = "#CCCCCC"
    priority: int = 0
    external_ids: dict = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "Category":
        known = {k: v for k, v in (data or {}).items() if k in cls.__dataclass_fields__ and k != "name"}
        return cls(name=name, **known)


class CategorySnapshot:
    """Read-only view of the store at one point in time."""

    def __init__(self, categories):
        self._by_name = dict(categories)
        self._by_external = {}
        for category in self._by_name.values():
            for instance_id, ext_id in category.external_ids.items():
                self._by_external[(instance_id, ext_id)] = category

    def get_by_name(self, name):
        return self._by_name.get(name)

    def get_by_external_id(self, instance_id, ext_id):
        return self._by_external.get((instance_id, ext_id))

    def entries(self):
        return list(self._by_name.items())

    def get_unlinked_for(self, instance_id):
        """Categories (Default excluded) with no link for this backend instance."""
        return [
            c for name, c in self._by_name.items()
            if name != DEFAULT_CATEGORY and c.external_ids.get(instance_id) is None
        ]


class CategoryStore:

    def __init__(self, path, registry=None, validate_debounce: float = 0.5):
        self.path = Path(path)
        self.registry = registry
        self.validate_debounce = validate_debounce

        self.categories = {}
        self.client_default_paths = {}
        self.path_warnings = {}
        # Serializes reconcile passes and CRUD against the backends
        self.lock = asyncio.Lock()

        self._validate_handle = None
        self._validate_future = None

    # --- PERSISTENCE ---

    async def load(self) -> None:
        if not self.path.exists():
            log.info(f"No category file at {self.path}, starting with {DEFAULT_CATEGORY}")
            self.categories = {}
            self._ensure_default()
            await self.save()
            return

        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CategoryError(f"Could not read {self.path}: {e}") from e

        raw = data.get("categories", {}) if isinstance(data, dict) else {}
        self.categories = {name: Category.from_dict(name, entry) for name, entry in raw.items()}
        if self._ensure_default():
            await self.save()
        log.info(f"Loaded {len(self.categories)} categories")

    async def save(self) -> None:
        payload = {
            "version": STORE_VERSION,
            "categories": {name: c.to_dict() for name, c in self.categories.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp_path, self.path)

    def _ensure_default(self) -> bool:
        if DEFAULT_CATEGORY in self.categories:
            return False
        self.categories[DEFAULT_CATEGORY] = Category(
            name=DEFAULT_CATEGORY, comment="Default category", color="#CCCCCC",
        )
        return True

    # --- LOOKUPS ---

    def get_by_name(self, name):
        return self.categories.get(name)

    def get_by_external_id(self, instance_id, ext_id):
        for category in self.categories.values():
            if category.external_ids.get(instance_id) == ext_id:
                return category
        return None

    def get_all(self):
        return list(self.categories.values())

    def get_categories_snapshot(self) -> CategorySnapshot:
        return CategorySnapshot(self.categories)

    def _require(self, name) -> Category:
        category = self.categories.get(name)
        if category is None:
            raise CategoryError(f'Category "{name}" not found')
        return category

    # --- LINKS ---

    def import_category(self, name, path=None, comment="", color=None, priority=0,
                        external_ids=None) -> Category:
        """Adds a category discovered on a backend. No backend calls."""
        if name in self.categories:
            raise CategoryError(f'Category "{name}" already exists')
        category = Category(
            name=name,
            path=path or None,
            comment=comment or "",
            color=color or get_random_color(),
            priority=priority or 0,
        )
        self.categories[name] = category
        for instance_id, ext_id in (external_ids or {}).items():
            self.link_external_id(name, instance_id, ext_id)
        return category

    def link_external_id(self, name, instance_id, ext_id) -> None:
        """Links name to ext_id on one backend. An id belongs to one category only."""
        category = self._require(name)
        for other in self.categories.values():
            if other is not category and other.external_ids.get(instance_id) == ext_id:
                del other.external_ids[instance_id]
        category.external_ids[instance_id] = ext_id
        category.updated_at = time.time()

    def unlink_external_id(self, name, instance_id) -> None:
        category = self.categories.get(name)
        if category is not None and category.external_ids.pop(instance_id, None) is not None:
            category.updated_at = time.time()

    # --- CLIENT PATHS ---

    def set_client_default_path(self, instance_id, path) -> None:
        self.client_default_paths[instance_id] = path

    def get_client_default_path(self, instance_id):
        return self.client_default_paths.get(instance_id)

    # --- CRUD ---

    def _connected_managers(self):
        if self.registry is None:
            return []
        return [m for m in self.registry.get_connected() if m.ops.supports_categories]

    async def create(self, name, path=None, comment="", color=None, priority=0, path_mappings=None) -> Category:
        name = (name or "").strip()
        if not name:
            raise CategoryError("Category name is required")
        async with self.lock:
            if name in self.categories:
                raise CategoryError(f'Category "{name}" already exists')
            category = Category(
                name=name, path=path or None, comment=comment or "",
                color=color or get_random_color(), priority=priority or 0,
                path_mappings=dict(path_mappings or {}),
            )
            self.categories[name] = category

            for manager in self._connected_managers():
                try:
                    ext_id = await manager.create_category(category)
                except SwarmBoardError as e:
                    log.error(f"Failed to create category {name} on {manager.instance_id}: {e}")
                    continue
                if ext_id is not None:
                    self.link_external_id(name, manager.instance_id, ext_id)

            await self.save()
        self.schedule_path_validation()
        return category

    async def update(self, name, **changes) -> dict:
        """Updates attributes and pushes them to every connected backend. Returns per-instance verification."""
        async with self.lock:
            category = self._require(name)
            for key in ("path", "comment", "color", "priority", "path_mappings"):
                if key in changes and changes[key] is not None:
                    setattr(category, key, changes[key])
            category.updated_at = time.time()

            results = {}
            if name != DEFAULT_CATEGORY:
                for manager in self._connected_managers():
                    try:
                        results[manager.instance_id] = await manager.update_category(category)
                    except SwarmBoardError as e:
                        log.error(f"Failed to update category {name} on {manager.instance_id}: {e}")
                        results[manager.instance_id] = {"success": False, "error": str(e)}

            await self.save()
        self.schedule_path_validation()
        return results

    async def rename(self, old_name, new_name) -> Category:
        new_name = (new_name or "").strip()
        if old_name == DEFAULT_CATEGORY:
            raise CategoryError(f"The {DEFAULT_CATEGORY} category cannot be renamed")
        if not new_name:
            raise CategoryError("Category name is required")
        async with self.lock:
            category = self._require(old_name)
            if new_name in self.categories:
                raise CategoryError(f'Category "{new_name}" already exists')

            del self.categories[old_name]
            category.name = new_name
            category.updated_at = time.time()
            self.categories[new_name] = category

            for manager in self._connected_managers():
                try:
                    new_ext_id = await manager.rename_category(old_name, category)
                except SwarmBoardError as e:
                    log.error(f"Failed to rename category {old_name} on {manager.instance_id}: {e}")
                    continue
                if new_ext_id is not None:
                    self.link_external_id(new_name, manager.instance_id, new_ext_id)

            await self.save()
        return category

    async def delete(self, name) -> None:
        if name == DEFAULT_CATEGORY:
            raise CategoryError(f"The {DEFAULT_CATEGORY} category cannot be deleted")
        async with self.lock:
            category = self._require(name)
            for manager in self._connected_managers():
                try:
                    await manager.delete_category(category)
                except SwarmBoardError as e:
                    log.error(f"Failed to delete category {name} on {manager.instance_id}: {e}")
            del self.categories[name]
            self.path_warnings.pop(name, None)
            await self.save()

    # --- PROPAGATION ---

    async def propagate_to_other_clients(self, exclude_instance_id=None) -> None:
        """Ensures every category exists on every other connected backend."""
        async with self.lock:
            categories = [c for n, c in self.categories.items() if n != DEFAULT_CATEGORY]
            if not categories:
                return
            dirty = False
            for manager in self._connected_managers():
                if manager.instance_id == exclude_instance_id:
                    continue
                try:
                    results = await manager.ensure_categories_batch(categories)
                except SwarmBoardError as e:
                    log.error(f"[SYNC] Failed to propagate categories to {manager.instance_id}: {e}")
                    continue
                for name, ext_id in results:
                    category = self.categories.get(name)
                    if category is None or ext_id is None:
                        continue
                    if category.external_ids.get(manager.instance_id) != ext_id:
                        self.link_external_id(name, manager.instance_id, ext_id)
                        dirty = True
            if dirty:
                await self.save()

    # --- PATH VALIDATION ---

    def get_path_warnings(self) -> dict:
        return dict(self.path_warnings)

    def _check_path(self, path):
        if not os.path.isdir(path):
            return "Directory not found"
        missing = []
        if not os.access(path, os.R_OK):
            missing.append("read")
        if not os.access(path, os.W_OK):
            missing.append("write")
        if missing:
            return f"Missing {' and '.join(missing)} permission"
        return None

    def _validate_now(self) -> dict:
        warnings = {}
        for name, category in self.categories.items():
            path = category.path
            if not path:
                continue
            problem = self._check_path(path)
            if problem:
                warnings[name] = {"path": path, "warning": problem}
        self.path_warnings = warnings
        if warnings:
            log.warning(f"Category path warnings: {', '.join(warnings)}")
        return warnings

    def schedule_path_validation(self):
        """
        Debounced path check. Every call inside the window pushes the check
        back; all callers get the same future, resolved with the warnings.
        """
        loop = asyncio.get_running_loop()
        if self._validate_handle is not None:
            self._validate_handle.cancel()
        if self._validate_future is None or self._validate_future.done():
            self._validate_future = loop.create_future()
        self._validate_handle = loop.call_later(self.validate_debounce, self._run_validation)
        return self._validate_future

    def _run_validation(self):
        self._validate_handle = None
        future, self._validate_future = self._validate_future, None
        try:
            result = self._validate_now()
        except OSError as e:
            if not future.done():
                future.set_exception(e)
            return
        if not future.done():
            future.set_result(result)

    async def validate_all_paths(self) -> dict:
        return await self.schedule_path_validation()
