from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Dict, Iterable, Mapping, Optional

from .config import BucketDefinition, CategoryDefinition
from .errors import AmbiguousBucket, NoBucketRole


@dataclass(frozen=True)
class Classification:
    category: CategoryDefinition
    bucket: BucketDefinition


def snapshot(role_ids: Iterable[int]) -> frozenset[int]:
    return frozenset(int(rid) for rid in role_ids)


class RoleClassifier:
    """Maps a member's role snapshot to a review category and bucket.

    The lookup tables are built once from the static category definitions.
    Every method takes a point-in-time set of role ids and has no side
    effects.
    """

    def __init__(
        self,
        categories: Iterable[CategoryDefinition],
        guild_roles: Mapping[int, str] | None = None,
        filter_role_ids: Iterable[int] = (),
    ):
        self.categories: Dict[str, CategoryDefinition] = {}
        self._by_bucket_role: Dict[int, tuple[CategoryDefinition, BucketDefinition]] = {}
        self._by_lead_role: Dict[int, CategoryDefinition] = {}
        for category in categories:
            self.categories[category.name] = category
            self._by_lead_role[category.lead_role_id] = category
            for bucket in category.buckets:
                self._by_bucket_role[bucket.role_id] = (category, bucket)
        self.guild_roles: Dict[int, str] = dict(guild_roles or {})
        self.filter_role_ids = frozenset(filter_role_ids)

    @property
    def bucket_role_ids(self) -> frozenset[int]:
        return frozenset(self._by_bucket_role)

    def category(self, name: str) -> Optional[CategoryDefinition]:
        return self.categories.get(name)

    def bucket_roles_in(self, roles: AbstractSet[int]) -> list[int]:
        return sorted(rid for rid in roles if rid in self._by_bucket_role)

    def classify(self, roles: AbstractSet[int]) -> Classification:
        matches = self.bucket_roles_in(roles)
        if not matches:
            raise NoBucketRole()
        if len(matches) > 1:
            raise AmbiguousBucket(matches)
        category, bucket = self._by_bucket_role[matches[0]]
        return Classification(category=category, bucket=bucket)

    def guild_affiliation(self, roles: AbstractSet[int]) -> Optional[str]:
        for role_id in sorted(roles):
            if role_id in self.guild_roles:
                return self.guild_roles[role_id]
        return None

    def is_exempt(self, roles: AbstractSet[int]) -> bool:
        return bool(self.filter_role_ids & roles)

    def lead_roles(self) -> frozenset[int]:
        """All category lead and bucket lead role ids."""
        ids = set(self._by_lead_role)
        for category in self.categories.values():
            ids.update(category.bucket_lead_role_ids)
        return frozenset(ids)

    def categories_touched_by(self, role_ids: AbstractSet[int]) -> list[CategoryDefinition]:
        """Categories whose lead or bucket-lead roles appear in ``role_ids``."""
        touched = []
        for category in self.categories.values():
            category_roles = {category.lead_role_id, *category.bucket_lead_role_ids}
            if category_roles & role_ids:
                touched.append(category)
        return touched

    @staticmethod
    def grants_access(
        category: CategoryDefinition,
        owner_bucket_role_id: int,
        roles: AbstractSet[int],
    ) -> bool:
        """Whether a member with ``roles`` belongs in a thread of the given bucket.

        Requires both the category lead role and the bucket-specific lead role.
        """
        bucket_lead = category.bucket_lead_for(owner_bucket_role_id)
        if not bucket_lead:
            return False
        return category.lead_role_id in roles and bucket_lead in roles

    @staticmethod
    def owner_bucket(
        category: CategoryDefinition,
        roles: AbstractSet[int],
        label: Optional[str] = None,
    ) -> Optional[BucketDefinition]:
        """The owner's bucket within ``category``.

        Falls back to the bucket whose label matches ``label`` (usually parsed
        from the thread title) when the owner holds none of its roles.
        """
        for bucket in category.buckets:
            if bucket.role_id in roles:
                return bucket
        if label is not None:
            for bucket in category.buckets:
                if bucket.label == label:
                    return bucket
        return None
