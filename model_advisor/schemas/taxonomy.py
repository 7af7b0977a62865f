"""
Task taxonomy schemas.

The taxonomy is the fixed hierarchy of task categories and subcategories
used as classification targets. Instances are immutable once loaded.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class TaskSubcategory:
    """A classification target inside a category."""
    id: str
    label: str
    keywords: FrozenSet[str] = frozenset()
    examples: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class TaskCategory:
    """Top-level task category with its subcategories."""
    id: str
    label: str
    subcategories: Tuple[TaskSubcategory, ...] = ()
    description: str = ""
    # Extra words the label grammar accepts for this category
    aliases: Tuple[str, ...] = ()
    default_subcategory: Optional[str] = None

    def get_subcategory(self, subcategory_id: str) -> Optional[TaskSubcategory]:
        for sub in self.subcategories:
            if sub.id == subcategory_id:
                return sub
        return None

    @property
    def keywords(self) -> FrozenSet[str]:
        """Union of all subcategory keywords."""
        merged = set()
        for sub in self.subcategories:
            merged.update(sub.keywords)
        return frozenset(merged)


@dataclass(frozen=True)
class ReferenceExample:
    """One taxonomy example phrase with its labels."""
    category: str
    subcategory: str
    text: str


@dataclass(frozen=True)
class TaskTaxonomy:
    """
    The full task taxonomy.

    ``priority_order`` is the fixed category priority list used to break
    ties deterministically. Categories missing from it rank after the listed
    ones, in file order.
    """
    categories: Tuple[TaskCategory, ...]
    priority_order: Tuple[str, ...] = ()
    _index: Dict[str, TaskCategory] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_index", {c.id: c for c in self.categories})

    def __len__(self) -> int:
        return len(self.categories)

    def __contains__(self, category_id: str) -> bool:
        return category_id in self._index

    def __iter__(self) -> Iterator[TaskCategory]:
        return iter(self.ordered_categories())

    def get_category(self, category_id: str) -> Optional[TaskCategory]:
        return self._index.get(category_id)

    def get_subcategory(self, category_id: str, subcategory_id: str) -> Optional[TaskSubcategory]:
        category = self._index.get(category_id)
        if category is None:
            return None
        return category.get_subcategory(subcategory_id)

    def priority_index(self, category_id: str) -> int:
        """Lower is higher priority."""
        if category_id in self.priority_order:
            return self.priority_order.index(category_id)
        ids = [c.id for c in self.categories]
        if category_id in ids:
            return len(self.priority_order) + ids.index(category_id)
        return len(self.priority_order) + len(ids)

    def ordered_categories(self) -> List[TaskCategory]:
        """Categories sorted by priority."""
        return sorted(self.categories, key=lambda c: self.priority_index(c.id))

    def subcategory_index(self, category_id: str, subcategory_id: str) -> int:
        category = self._index.get(category_id)
        if category is None:
            return 0
        for i, sub in enumerate(category.subcategories):
            if sub.id == subcategory_id:
                return i
        return len(category.subcategories)

    def default_subcategory(self, category_id: str) -> Optional[str]:
        """
        Subcategory to use when only the category is known.

        Prefers the category's declared default, then its first subcategory.
        """
        category = self._index.get(category_id)
        if category is None:
            return None
        if category.default_subcategory and category.get_subcategory(category.default_subcategory):
            return category.default_subcategory
        if category.subcategories:
            return category.subcategories[0].id
        return None

    @property
    def fallback(self) -> Tuple[str, str]:
        """(category, subcategory) returned when nothing matches."""
        for category in self.ordered_categories():
            subcategory = self.default_subcategory(category.id)
            if subcategory:
                return category.id, subcategory
        raise ValueError("Taxonomy has no subcategories to fall back to")

    def reference_examples(self) -> List[ReferenceExample]:
        """Every example phrase in the taxonomy, in priority order."""
        examples = []
        for category in self.ordered_categories():
            for sub in category.subcategories:
                for text in sub.examples:
                    examples.append(ReferenceExample(category.id, sub.id, text))
        return examples
