"""Category registry.

Categories come from a fixed default list seeded at start-up. Lookups go
through `CategoryRegistry.resolve`, which never fails: anything it does not
know maps to the `other` sentinel.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlmodel import Session, select

from models import Category

logger = logging.getLogger(__name__)

OTHER_ID = "other"


@dataclass(frozen=True)
class CategoryDef:
    id: str
    name: str
    color: str = "#a0aec0"
    icon: str = ""
    type: str = "expense"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "color": self.color,
            "icon": self.icon,
            "type": self.type,
        }


OTHER_CATEGORY = CategoryDef(id=OTHER_ID, name="其他", color="#a0aec0", icon="📦")

DEFAULT_CATEGORIES = (
    CategoryDef("food", "餐饮", "#ff6b6b", "🍽️"),
    CategoryDef("transport", "交通", "#4ecdc4", "🚗"),
    CategoryDef("shopping", "购物", "#45b7d1", "🛍️"),
    CategoryDef("entertainment", "娱乐", "#96ceb4", "🎮"),
    CategoryDef("study", "学习", "#feca57", "📚"),
    CategoryDef("salary", "工资", "#4fd1c5", "💰", type="income"),
    CategoryDef("investment", "投资", "#667eea", "📈", type="income"),
    OTHER_CATEGORY,
)


class CategoryRegistry:
    """Read-only lookup table of categories keyed by id."""

    def __init__(self, categories: Iterable[CategoryDef] = DEFAULT_CATEGORIES):
        self._by_id: dict[str, CategoryDef] = {}
        for category in categories:
            self._by_id.setdefault(category.id, category)
        self.other = self._by_id.setdefault(OTHER_ID, OTHER_CATEGORY)

    @classmethod
    def from_session(cls, session: Session) -> "CategoryRegistry":
        """Build a registry from the category table (defaults if it is empty)."""
        rows = session.exec(select(Category)).all()
        if not rows:
            return cls()
        return cls(
            CategoryDef(id=r.id, name=r.name, color=r.color, icon=r.icon, type=r.type)
            for r in rows
        )

    def __contains__(self, category_id: object) -> bool:
        return category_id in self._by_id

    def __len__(self) -> int:
        return len(self._by_id)

    def get(self, category_id: Optional[str]) -> Optional[CategoryDef]:
        """Strict lookup: None for unknown ids."""
        if category_id is None:
            return None
        return self._by_id.get(category_id)

    def resolve(self, category_id: Optional[str]) -> CategoryDef:
        """Total lookup: unknown or missing ids resolve to `other`."""
        category = self.get(category_id)
        if category is None:
            logger.debug("Unknown category %r, using %r", category_id, OTHER_ID)
            return self.other
        return category

    def all(self) -> list[CategoryDef]:
        return list(self._by_id.values())

    def expense_categories(self) -> list[CategoryDef]:
        return [c for c in self._by_id.values() if c.type == "expense"]


def seed_default_categories(session: Session) -> int:
    """Insert the default categories if the table is empty. Returns rows added."""
    existing_category = session.exec(select(Category)).first()
    if existing_category:
        logger.info("Categories already exist, skipping seed")
        return 0

    session.add_all(
        [
            Category(id=c.id, name=c.name, color=c.color, icon=c.icon, type=c.type)
            for c in DEFAULT_CATEGORIES
        ]
    )
    session.commit()
    logger.info("Added %d default categories", len(DEFAULT_CATEGORIES))
    return len(DEFAULT_CATEGORIES)
