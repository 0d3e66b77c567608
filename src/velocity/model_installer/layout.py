"""
Structural classification and payload normalisation.

One set of predicates decides what an installed model looks like; both the
install-time verification and the registry listing go through them so the
two can never disagree.
"""

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .errors import VerificationFailed
from .fsutils import copy_children, copy_item, visible_children

logger = logging.getLogger(__name__)

BUNDLE_EXTENSION = ".mlmodelc"
COMPILED_DIRNAME = "compiled"
TOKENIZER_MARKER = "merges.txt"
VAE_TOKENS = ("vae", "autoencoder")


def is_bundle(path: Path) -> bool:
    return path.suffix == BUNDLE_EXTENSION and path.is_dir()


def _is_compiled_dir(path: Path) -> bool:
    return path.name.lower() == COMPILED_DIRNAME and path.is_dir()


def iter_directories(root: Path) -> Iterator[Path]:
    """Breadth-first walk of directories below ``root`` (shallowest first).

    Bundles are yielded but not descended into; metadata entries are skipped.
    """
    queue = deque([root])
    while queue:
        current = queue.popleft()
        for child in visible_children(current):
            if child.is_symlink() or not child.is_dir():
                continue
            yield child
            if not is_bundle(child):
                queue.append(child)


def iter_bundles(root: Path) -> Iterator[Path]:
    return (d for d in iter_directories(root) if d.suffix == BUNDLE_EXTENSION)


def find_compiled_dir(root: Path) -> Optional[Path]:
    return next((d for d in iter_directories(root) if _is_compiled_dir(d)), None)


def find_first_bundle(root: Path) -> Optional[Path]:
    return next(iter_bundles(root), None)


def contains_compiled_resources(root: Path) -> bool:
    """True when ``root`` carries a recognisable compiled-resource marker."""
    if not root.is_dir():
        return False
    for item in visible_children(root):
        if item.is_dir():
            if item.suffix == BUNDLE_EXTENSION:
                return True
            if COMPILED_DIRNAME in item.name.lower():
                return True
        if item.name.lower() == TOKENIZER_MARKER:
            return True
    return find_first_bundle(root) is not None


def has_vae_component(root: Path) -> bool:
    """True when some bundle below ``root`` is a VAE / autoencoder."""
    if not root.is_dir():
        return False
    for bundle in iter_bundles(root):
        name = bundle.name.lower()
        if any(token in name for token in VAE_TOKENS):
            return True
    return False


def is_valid_install(root: Path) -> bool:
    return contains_compiled_resources(root) and has_vae_component(root)


def find_resources_dir(base: Path) -> Path:
    """Directory to hand to inference for an installed model at ``base``.

    Never returns an individual bundle.
    """
    compiled = base / COMPILED_DIRNAME
    if compiled.is_dir():
        return compiled
    if (base / TOKENIZER_MARKER).exists():
        return base
    for child in visible_children(base):
        if not child.is_dir() or child.suffix == BUNDLE_EXTENSION:
            continue
        sub_compiled = child / COMPILED_DIRNAME
        if sub_compiled.is_dir():
            return sub_compiled
        if (child / TOKENIZER_MARKER).exists():
            return child
        if any(is_bundle(grandchild) for grandchild in visible_children(child)):
            return child
    return base


def descend_to_payload(root: Path) -> Path:
    """Collapse redundant single-folder nesting.

    Stops at bundles and ``compiled`` directories, which are payload units
    themselves.
    """
    current = root
    while True:
        children = list(visible_children(current))
        if len(children) != 1:
            return current
        only = children[0]
        if not only.is_dir() or is_bundle(only) or _is_compiled_dir(only):
            return current
        current = only


@dataclass
class LocateResult:
    destination: Path
    payload_root: Path
    strategy: str  # "compiled", "bundle_parent", "bundle", "children"
    merged: bool = False


class PayloadLocator:
    """Normalises an extracted or downloaded tree into the installed layout."""

    def locate(self, source_root: Path, destination: Path) -> LocateResult:
        """Populate ``destination`` from ``source_root`` and verify it.

        Raises ``VerificationFailed`` when even the last-resort merge does not
        produce a valid install; ``destination`` is left populated.
        """
        payload_root = descend_to_payload(source_root)
        destination.mkdir(parents=True, exist_ok=True)
        logger.info("Payload root: %s", payload_root)

        compiled = find_compiled_dir(payload_root)
        if compiled is not None:
            copy_item(compiled, destination / COMPILED_DIRNAME)
            strategy = "compiled"
        else:
            bundle = find_first_bundle(payload_root)
            if bundle is not None and bundle.parent != payload_root:
                # Keep sibling resources (tokenizer, vocab) next to the bundles
                copy_item(bundle.parent, destination / bundle.parent.name)
                strategy = "bundle_parent"
            elif bundle is not None:
                copy_item(bundle, destination / bundle.name)
                strategy = "bundle"
            else:
                copy_children(payload_root, destination)
                strategy = "children"

        result = LocateResult(destination, payload_root, strategy)
        if is_valid_install(destination):
            return result

        logger.warning(
            "Layout after %r strategy is incomplete; merging payload root", strategy
        )
        copy_children(payload_root, destination)
        result.merged = True
        if not is_valid_install(destination):
            raise VerificationFailed(destination, merged=True)
        return result
