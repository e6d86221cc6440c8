from __future__ import annotations

import re
from typing import Callable


SKU_FAMILY = "sku_family"
BRANCH_STORE = "branch_store"
MAPPING_KINDS = frozenset({SKU_FAMILY, BRANCH_STORE})

# Size suffix after a digit, optionally separated by "-" or "_": ABC123-M, ABC123XL.
_SIZE_SUFFIX = re.compile(r"^(.*\d)[-_]?(XXXL|XXL|XL|XS|S|M|L|F)$", re.IGNORECASE)
_SEPARATORS = re.compile(r"[-_\s]+$")


def sku_to_family_code(sku: str) -> str:
    # Strip one trailing size/variant suffix; codes without a suffix are their own family.
    code = (sku or "").strip().upper()
    match = _SIZE_SUFFIX.match(code)
    if match:
        code = match.group(1)
    return _SEPARATORS.sub("", code)


def branch_to_store_code(branch: str) -> str:
    # Branch ids arrive as ints or padded strings; store codes are trimmed upper-case text.
    return str(branch if branch is not None else "").strip().upper()


TRANSFORMS: dict[str, Callable[[str], str]] = {
    SKU_FAMILY: sku_to_family_code,
    BRANCH_STORE: branch_to_store_code,
}


def canonical_key(kind: str, external_key: str) -> str:
    try:
        transform = TRANSFORMS[kind]
    except KeyError as exc:
        raise ValueError(f"Unknown mapping kind: {kind}") from exc
    return transform(external_key)
