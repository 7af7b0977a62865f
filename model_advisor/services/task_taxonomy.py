"""
Task Taxonomy Service.

Loads data/task_taxonomy.yaml into an immutable TaskTaxonomy. The taxonomy
is loaded once per process/session and passed explicitly to every
classifier that needs it.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from model_advisor.schemas.taxonomy import TaskCategory, TaskSubcategory, TaskTaxonomy
from model_advisor.utils.logger import log


# =============================================================================
# Parsing
# =============================================================================

def _parse_subcategory(sub_id: str, data: Dict[str, Any]) -> TaskSubcategory:
    keywords = data.get("keywords", []) or []
    return TaskSubcategory(
        id=sub_id,
        label=data.get("label", sub_id.replace("_", " ").title()),
        keywords=frozenset(str(k).strip().lower() for k in keywords if str(k).strip()),
        examples=tuple(str(e) for e in (data.get("examples", []) or [])),
        description=data.get("description", ""),
    )


def _parse_category(category_id: str, data: Dict[str, Any]) -> TaskCategory:
    subcategories = []
    for sub_id, sub_data in (data.get("subcategories", {}) or {}).items():
        if not isinstance(sub_data, dict):
            continue
        subcategories.append(_parse_subcategory(sub_id, sub_data))

    return TaskCategory(
        id=category_id,
        label=data.get("label", category_id.replace("_", " ").title()),
        subcategories=tuple(subcategories),
        description=data.get("description", ""),
        aliases=tuple(str(a).lower() for a in (data.get("aliases", []) or [])),
        default_subcategory=data.get("default_subcategory"),
    )


def parse_taxonomy(data: Dict[str, Any]) -> TaskTaxonomy:
    """
    Build a TaskTaxonomy from the raw YAML mapping.

    Args:
        data: Mapping with ``categories`` and optional ``priority_order``

    Returns:
        Immutable taxonomy
    """
    categories: List[TaskCategory] = []
    for category_id, category_data in (data.get("categories", {}) or {}).items():
        if not isinstance(category_data, dict):
            log.warning(f"Skipping malformed taxonomy category: {category_id}")
            continue
        categories.append(_parse_category(category_id, category_data))

    known = {c.id for c in categories}
    priority = []
    for category_id in data.get("priority_order", []) or []:
        if category_id in known:
            priority.append(category_id)
        else:
            log.warning(f"Unknown category in priority_order: {category_id}")

    return TaskTaxonomy(categories=tuple(categories), priority_order=tuple(priority))


# =============================================================================
# Loader
# =============================================================================

class TaskTaxonomyLoader:
    """
    Loads the task taxonomy YAML file.

    Usage:
        loader = TaskTaxonomyLoader()
        if loader.load():
            taxonomy = loader.taxonomy
    """

    DEFAULT_PATH = Path(__file__).parent.parent.parent / "data" / "task_taxonomy.yaml"

    def __init__(self, yaml_path: Optional[Path] = None):
        self.yaml_path = Path(yaml_path) if yaml_path else self.DEFAULT_PATH
        self._taxonomy: Optional[TaskTaxonomy] = None

    def load(self) -> bool:
        """
        Load the taxonomy from YAML.

        Returns:
            True if loaded successfully, False otherwise.
        """
        try:
            with open(self.yaml_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}

            self._taxonomy = parse_taxonomy(raw)
            subcategory_count = sum(len(c.subcategories) for c in self._taxonomy.categories)
            log.info(
                f"Loaded {len(self._taxonomy)} categories / {subcategory_count} subcategories "
                f"from {self.yaml_path}"
            )
            return True

        except FileNotFoundError:
            log.error(f"Task taxonomy not found: {self.yaml_path}")
            return False
        except yaml.YAMLError as e:
            log.error(f"Failed to parse task taxonomy: {e}")
            return False
        except (AttributeError, TypeError, ValueError) as e:
            log.error(f"Invalid task taxonomy structure: {e}")
            return False

    @property
    def is_loaded(self) -> bool:
        return self._taxonomy is not None

    @property
    def taxonomy(self) -> TaskTaxonomy:
        if self._taxonomy is None:
            raise RuntimeError("Taxonomy not loaded; call load() first")
        return self._taxonomy
