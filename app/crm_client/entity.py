"""
Entidad CRM con seguimiento de cambios
"""
from typing import Any, Dict, Iterator, Optional

from .xml_utils import EMPTY_GUID


class Entity:
    """
    Registro de una entidad CRM

    Los atributos asignados después de crear o leer la entidad quedan marcados
    como modificados; create/update envían solo esos atributos y reset() limpia
    la marca.
    """

    def __init__(
        self,
        logical_name: str,
        entity_id: Optional[str] = None,
        attributes: Optional[Dict[str, Any]] = None,
    ):
        self.logical_name = logical_name
        self.id = entity_id or EMPTY_GUID
        self.attributes: Dict[str, Any] = dict(attributes or {})
        self._changed = set()

    def __getitem__(self, key: str) -> Any:
        return self.attributes[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.attributes[key] = value
        self._changed.add(key)

    def __contains__(self, key: str) -> bool:
        return key in self.attributes

    def __iter__(self) -> Iterator[str]:
        return iter(self.attributes)

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    @property
    def is_new(self) -> bool:
        return self.id == EMPTY_GUID

    @property
    def changed_attributes(self) -> Dict[str, Any]:
        return {key: self.attributes[key] for key in sorted(self._changed)}

    def reset(self) -> None:
        self._changed.clear()

    def __repr__(self) -> str:
        return f"Entity({self.logical_name!r}, {self.id!r})"
