from __future__ import annotations

from pocketledger.models import CATEGORIES, CategoryExtension, CostCategory, CustomCategories


def _extension(custom: CustomCategories, category: CostCategory) -> CategoryExtension:
    existing = custom.for_category(category)
    if existing is None:
        return CategoryExtension()
    return existing.model_copy(deep=True)


def _clean(value: str, label: str) -> str:
    cleaned = value.strip().upper()
    if not cleaned:
        raise ValueError(f"{label} required.")
    return cleaned


def add_custom_subcategory(
    custom: CustomCategories, category: CostCategory, sub_category: str
) -> CustomCategories:
    name = _clean(sub_category, "Sub-category")
    extension = _extension(custom, category)
    if name not in extension.new_sub_categories and name not in CATEGORIES[category]:
        extension.new_sub_categories.append(name)
    return custom.model_copy(update={category.value: extension})


def add_custom_detail(
    custom: CustomCategories, category: CostCategory, sub_category: str, detail: str
) -> CustomCategories:
    sub_name = _clean(sub_category, "Sub-category")
    name = _clean(detail, "Detail")
    extension = _extension(custom, category)
    details = extension.sub_categories.setdefault(sub_name, [])
    if name not in details and name not in CATEGORIES[category].get(sub_name, []):
        details.append(name)
    return custom.model_copy(update={category.value: extension})


def subcategory_options(custom: CustomCategories, category: CostCategory) -> list[str]:
    options = list(CATEGORIES[category])
    extension = custom.for_category(category)
    if extension is not None:
        options.extend(name for name in extension.new_sub_categories if name not in options)
    return options


def detail_options(custom: CustomCategories, category: CostCategory, sub_category: str) -> list[str]:
    options = list(CATEGORIES[category].get(sub_category, []))
    extension = custom.for_category(category)
    if extension is not None:
        options.extend(
            name for name in extension.sub_categories.get(sub_category, []) if name not in options
        )
    if "OTHER" not in options:
        options.append("OTHER")
    return options
