"""Category hierarchy: display forest, positional codes and reparent safety.

Categories are stored flat with a ``parent_id`` edge.  The forest and the
``"2.1.3"`` codes are derived on every call, so inserting or deleting a
category renumbers its later siblings.  Traversals are iterative over an
arena of categories plus a parent -> children index.
"""
from __future__ import annotations

import unicodedata
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, Optional, Sequence

from .errors import ValidationError
from .models import Category, Transaction, TransactionType, TreeNode

_ROOT = None


def sort_key(name: str) -> tuple[str, str]:
    """Locale-style ordering: accents and case only break ties."""

    decomposed = unicodedata.normalize("NFKD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return stripped.casefold(), name


def _children_index(categories: Sequence[Category]) -> dict[Optional[str], list[Category]]:
    """Group ``categories`` by parent, attaching orphans to the root."""

    by_id = {category.id: category for category in categories}
    index: dict[Optional[str], list[Category]] = defaultdict(list)
    for category in categories:
        parent = by_id.get(category.parent_id) if category.parent_id else None
        # Missing parents and parents of another type would hide the node.
        if parent is None or parent.type is not category.type or parent.id == category.id:
            index[_ROOT].append(category)
        else:
            index[parent.id].append(category)
    for siblings in index.values():
        siblings.sort(key=lambda category: sort_key(category.name))
    return index


def build_forest(categories: Iterable[Category], type: TransactionType) -> list[TreeNode]:
    """Return the ordered forest of ``type`` categories with codes and depths."""

    same_type = [category for category in categories if category.type is TransactionType(type)]
    index = _children_index(same_type)

    roots: list[TreeNode] = []
    stack: list[tuple[Category, Optional[TreeNode], int]] = []
    for position, category in reversed(list(enumerate(index[_ROOT], start=1))):
        stack.append((category, None, position))

    visited: set[str] = set()
    while stack:
        category, parent, position = stack.pop()
        if category.id in visited:
            continue
        visited.add(category.id)
        if parent is None:
            node = TreeNode(category=category, code=str(position), depth=0)
            roots.append(node)
        else:
            node = TreeNode(category=category, code=f"{parent.code}.{position}", depth=parent.depth + 1)
            parent.children.append(node)
        for child_position, child in reversed(list(enumerate(index.get(category.id, []), start=1))):
            stack.append((child, node, child_position))
    return roots


def walk(forest: Iterable[TreeNode]) -> Iterator[TreeNode]:
    """Pre-order traversal of a forest."""

    stack = list(reversed(list(forest)))
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(node.children))


def excluded_descendants(categories: Iterable[Category], root_id: str) -> set[str]:
    """Return ``root_id`` plus every category below it.

    These are the categories that may not become the new parent of
    ``root_id``; choosing any of them would create a cycle.
    """

    children: dict[str, list[str]] = defaultdict(list)
    for category in categories:
        if category.parent_id:
            children[category.parent_id].append(category.id)

    excluded = {root_id}
    pending = [root_id]
    while pending:
        current = pending.pop()
        for child_id in children.get(current, ()):
            if child_id not in excluded:
                excluded.add(child_id)
                pending.append(child_id)
    return excluded


def parent_options(
    categories: Sequence[Category],
    type: TransactionType,
    editing_id: Optional[str] = None,
) -> list[TreeNode]:
    """Flattened candidates for a "choose parent" selector.

    The category being edited and its descendants are left out.  Codes are
    those of the full forest so the selector matches the category list.
    """

    excluded = excluded_descendants(categories, editing_id) if editing_id else set()
    options = []
    for node in walk(build_forest(categories, type)):
        if node.category.id in excluded:
            continue
        options.append(TreeNode(category=node.category, code=node.code, depth=node.depth))
    return options


def check_parent(
    categories: Sequence[Category],
    category_type: TransactionType,
    parent_id: Optional[str],
    category_id: Optional[str] = None,
) -> None:
    """Validate a parent choice for a new or existing category."""

    if parent_id is None:
        return
    if category_type is TransactionType.TRANSFER:
        raise ValidationError("type", "categories are INCOME or EXPENSE")
    by_id = {category.id: category for category in categories}
    parent = by_id.get(parent_id)
    if parent is None:
        raise ValidationError("parent_id", f"unknown category {parent_id!r}")
    if parent.type is not category_type:
        raise ValidationError("parent_id", "parent must have the same type")
    if category_id is not None and parent_id in excluded_descendants(categories, category_id):
        raise ValidationError("parent_id", "a category cannot be moved below itself")


def budget_usage(
    categories: Sequence[Category],
    transactions: Iterable[Transaction],
    month: date,
) -> list[dict[str, object]]:
    """Spend against ``budget_limit`` for each limited EXPENSE category.

    Spend covers root (non-settlement) rows dated in ``month`` booked on the
    category itself or any of its descendants.
    """

    direct: dict[str, Decimal] = defaultdict(Decimal)
    for transaction in transactions:
        if (
            transaction.type is TransactionType.EXPENSE
            and transaction.category_id
            and transaction.parent_id is None
            and (transaction.date.year, transaction.date.month) == (month.year, month.month)
        ):
            direct[transaction.category_id] += transaction.amount

    usage = []
    for category in categories:
        if category.type is not TransactionType.EXPENSE or not category.budget_limit:
            continue
        spent = sum(
            (direct[member] for member in excluded_descendants(categories, category.id)),
            Decimal("0"),
        )
        usage.append(
            {
                "category_id": category.id,
                "name": category.name,
                "budget_limit": category.budget_limit,
                "spent": spent,
                "remaining": category.budget_limit - spent,
                "exceeded": spent > category.budget_limit,
            }
        )
    usage.sort(key=lambda item: sort_key(item["name"]))
    return usage


__all__ = [
    "budget_usage",
    "build_forest",
    "check_parent",
    "excluded_descendants",
    "parent_options",
    "sort_key",
    "walk",
]
