"""Split-state layers: independent root modules joined via remote-state lookups.

A split directory looks like::

    dev-split/
      01-networking/   backend key  project/dev/networking.tfstate
      02-database/     reads        project/dev/networking.tfstate
      03-compute/      reads        networking + database

Each layer owns its own state file.  A layer may only read the state of
layers that come *before* it, which gives the apply order (ascending) and
the destroy order (descending).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from tf_workflows.backend import read_backend_config, remote_state_keys
from tf_workflows.errors import LayerOrderError

logger = logging.getLogger(__name__)

_LAYER_DIR_RE = re.compile(r"^(?P<order>\d+)-(?P<name>.+)$")


@dataclass
class Layer:
    """One root module in a split directory."""

    order: int
    name: str
    path: Path
    state_key: str = ""
    depends_on: dict[str, str] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.path.name


def discover_layers(split_dir: Path) -> list[Layer]:
    """Find ``NN-name`` layer directories and read their backend / remote-state keys."""
    split_dir = Path(split_dir)
    if not split_dir.is_dir():
        raise FileNotFoundError(f"Split directory not found: {split_dir}")

    layers: list[Layer] = []
    for child in split_dir.iterdir():
        if not child.is_dir():
            continue
        m = _LAYER_DIR_RE.match(child.name)
        if not m:
            continue

        state_key = ""
        for tf_file in sorted(child.glob("*.tf")):
            backend = read_backend_config(tf_file)
            if backend is not None:
                state_key = backend.key
                break

        layers.append(Layer(
            order=int(m.group("order")),
            name=m.group("name"),
            path=child,
            state_key=state_key,
            depends_on=remote_state_keys(child),
        ))

    layers.sort(key=lambda layer: (layer.order, layer.name))
    logger.info("Discovered %d layers in %s", len(layers), split_dir)
    return layers


def validate_layers(layers: list[Layer]) -> list[str]:
    """Check that every remote-state read points at an earlier layer.

    Returns warnings for dependencies on state outside the split directory.
    Raises ``LayerOrderError`` for reads of the same or a later layer.
    """
    position = {layer.state_key: i for i, layer in enumerate(layers) if layer.state_key}
    warnings: list[str] = []

    seen_orders: dict[int, str] = {}
    for layer in layers:
        if layer.order in seen_orders:
            raise LayerOrderError(
                f"Layers {seen_orders[layer.order]} and {layer.label} share order {layer.order:02d}"
            )
        seen_orders[layer.order] = layer.label

    for i, layer in enumerate(layers):
        for source, key in sorted(layer.depends_on.items()):
            if key not in position:
                warnings.append(
                    f"{layer.label}: remote state '{source}' reads {key}, "
                    "which no layer in this directory writes"
                )
                continue
            if position[key] >= i:
                raise LayerOrderError(
                    f"{layer.label} reads {key} from {layers[position[key]].label}, "
                    "which is not applied before it"
                )

    for w in warnings:
        logger.warning(w)
    return warnings


def apply_order(layers: list[Layer]) -> list[Layer]:
    return sorted(layers, key=lambda layer: (layer.order, layer.name))


def destroy_order(layers: list[Layer]) -> list[Layer]:
    return list(reversed(apply_order(layers)))
