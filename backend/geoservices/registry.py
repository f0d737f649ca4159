from typing import Dict, List, Protocol

from .adapter import AnyLayer, AnySource
from .models import RegisteredLayer
from .utils.logging import get_logger

logger = get_logger(__name__)


class MapLayerRegistry(Protocol):
    """What the orchestrator needs from the map renderer."""

    def add_layer(self, layer_id: str, source_id: str, source: AnySource, layer: AnyLayer) -> None:
        ...

    def remove_layer(self, layer_id: str) -> bool:
        ...

    def set_layer_visibility(self, layer_id: str, visible: bool) -> bool:
        ...


class InMemoryLayerRegistry:
    """Keeps registered sources and layers for a renderer to pull."""

    def __init__(self) -> None:
        self._layers: Dict[str, RegisteredLayer] = {}

    def add_layer(self, layer_id: str, source_id: str, source: AnySource, layer: AnyLayer) -> None:
        if layer_id in self._layers:
            raise ValueError(f"Layer '{layer_id}' is already registered")
        if any(entry.sourceId == source_id for entry in self._layers.values()):
            raise ValueError(f"Source '{source_id}' is already registered")
        self._layers[layer_id] = RegisteredLayer(
            layerId=layer_id, sourceId=source_id, source=source, layer=layer
        )
        logger.info("Registered map layer", extra={'layer_id': layer_id, 'source_id': source_id})

    def remove_layer(self, layer_id: str) -> bool:
        # The source goes with its layer; sources are never shared here
        entry = self._layers.pop(layer_id, None)
        if entry is None:
            return False
        logger.info("Removed map layer", extra={'layer_id': layer_id, 'source_id': entry.sourceId})
        return True

    def set_layer_visibility(self, layer_id: str, visible: bool) -> bool:
        entry = self._layers.get(layer_id)
        if entry is None:
            return False
        self._layers[layer_id] = entry.model_copy(update={'visible': visible})
        return True

    def get(self, layer_id: str):
        return self._layers.get(layer_id)

    def snapshot(self) -> List[RegisteredLayer]:
        return list(self._layers.values())

    def __len__(self) -> int:
        return len(self._layers)
