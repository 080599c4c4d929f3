"""Load collection metadata from YAML files.

Layout under the metadata root::

    collections/*.yaml   one collection per file
    blocks/*.yaml        reusable field groups, pulled in with ``includes``

A collection file is a ``meta_config`` as accepted by
:meth:`MetadataRegistry.register`, plus an optional ``includes`` list::

    collection: product
    includes:
      - block: audit
        prefix: ""
    fields:
      - name: name
        required: true
    roles:
      - "admin:*"
      - "user:rs"
"""

import copy
import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from metaguard.core.errors import ConfigurationError
from metaguard.hooks import register_builtin_hooks
from metaguard.metadata.registry import MetadataRegistry

logger = logging.getLogger(__name__)


class MetadataLoader:
    """Loads collection and block definitions from YAML files."""

    def __init__(self, metadata_path: Path):
        self.metadata_path = Path(metadata_path)
        self.collections: dict[str, dict[str, Any]] = {}
        self.blocks: dict[str, list[dict]] = {}
        self.sources: dict[str, Path] = {}

    def load_all(self) -> None:
        """Load all blocks and collections."""
        self._load_blocks()
        self._load_collections()

    def _load_blocks(self) -> None:
        """Load reusable block definitions."""
        blocks_path = self.metadata_path / "blocks"
        if not blocks_path.exists():
            return

        for yaml_file in sorted(blocks_path.glob("*.yaml")):
            with open(yaml_file) as f:
                data = yaml.safe_load(f)
                if data and "block" in data:
                    self.blocks[data["block"]] = data.get("fields", [])

    def _load_collections(self) -> None:
        """Load collection definitions."""
        collections_path = self.metadata_path / "collections"
        if not collections_path.exists():
            logger.warning("No collections directory under %s", self.metadata_path)
            return

        for yaml_file in sorted(collections_path.glob("*.yaml")):
            with open(yaml_file) as f:
                data = yaml.safe_load(f)
            if not data or "collection" not in data:
                logger.warning("Skipping %s: no 'collection' key", yaml_file)
                continue

            name = data["collection"]
            if name in self.collections:
                raise ConfigurationError(
                    f"Collection '{name}' defined in both {self.sources[name]} and {yaml_file}"
                )
            self.collections[name] = self._resolve_collection(data)
            self.sources[name] = yaml_file

    def _resolve_collection(self, data: dict) -> dict[str, Any]:
        """Expand blocks into a plain meta_config."""
        name = data["collection"]
        meta_config = {k: v for k, v in data.items() if k != "includes"}

        all_fields: list[dict] = []
        for include in data.get("includes", []):
            block_name = include["block"]
            if block_name not in self.blocks:
                raise ConfigurationError(f"{name}: unknown block '{block_name}'")
            prefix = include.get("prefix", "")
            for block_field in self.blocks[block_name]:
                field_copy = copy.deepcopy(block_field)
                if prefix:
                    field_copy["name"] = prefix + field_copy["name"]
                all_fields.append(field_copy)

        all_fields.extend(data.get("fields") or [])
        meta_config["fields"] = all_fields
        return meta_config

    def register_all(self, registry: MetadataRegistry) -> None:
        """Register every loaded collection with the registry.

        Raises:
            ConfigurationError: If a collection is invalid; the message names
                the source file
        """
        for name, meta_config in self.collections.items():
            try:
                registry.register(meta_config)
            except ConfigurationError as e:
                raise ConfigurationError(f"{self.sources[name]}: {e}") from e
        logger.info("Registered %d collections from %s", len(self.collections), self.metadata_path)

    def get_collection(self, name: str) -> dict[str, Any] | None:
        """Get a resolved meta_config by name."""
        return self.collections.get(name)

    def list_collections(self) -> list[str]:
        """List all collection names."""
        return list(self.collections.keys())


def load_registry(
    metadata_path: Path,
    *,
    strict_ids: bool = False,
    hook_modules: Iterable[str] = (),
) -> MetadataRegistry:
    """Register hook modules, load every collection file and seal the registry.

    Raises:
        ConfigurationError: For any invalid collection
    """
    register_builtin_hooks(hook_modules)

    loader = MetadataLoader(metadata_path)
    loader.load_all()

    registry = MetadataRegistry(strict_ids=strict_ids)
    loader.register_all(registry)
    registry.seal()
    return registry
