"""
=============================================================================
CABINEX - Jerarquía de Errores
=============================================================================
Cada error lleva un código legible por máquina y el status HTTP con el que
se expone en la API:

    CabinexError
    +-- ValidationError          400  VALIDATION_ERROR
    +-- NotFoundError            404  NOT_FOUND
    +-- InvalidTransitionError   400  INVALID_TRANSITION
    |   +-- AlreadySettledError  400  ALREADY_SETTLED
    +-- ConflictError            400  CONFLICT
    +-- AuthError                401  AUTH_FAILED
    +-- InvariantViolationError  500  INVARIANT_VIOLATION
    +-- StoreError               500  STORE_ERROR
=============================================================================
"""

from typing import Any, Dict, Optional


class CabinexError(Exception):
    """Error base del dominio."""

    code: str = "CABINEX_ERROR"
    status_code: int = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class ValidationError(CabinexError):
    """Falta un campo obligatorio o tiene un valor inválido."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(CabinexError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        super().__init__(
            message or f"{entity} no encontrado: {entity_id}",
            entity=entity,
            entity_id=entity_id,
        )
        self.entity = entity
        self.entity_id = entity_id


class InvalidTransitionError(CabinexError):
    """La entidad está en un estado terminal y no admite la operación."""

    code = "INVALID_TRANSITION"
    status_code = 400


class AlreadySettledError(InvalidTransitionError):
    """La orden o el retiro ya fue liquidado."""

    code = "ALREADY_SETTLED"
    status_code = 400


class ConflictError(CabinexError):
    code = "CONFLICT"
    status_code = 400


class AuthError(CabinexError):
    code = "AUTH_FAILED"
    status_code = 401


class InvariantViolationError(CabinexError):
    """Se detectó un estado que nunca debería existir (p.ej. saldo duplicado)."""

    code = "INVARIANT_VIOLATION"
    status_code = 500


class StoreError(CabinexError):
    code = "STORE_ERROR"
    status_code = 500

    def __init__(self, message: str = "Error interno del servidor", **details: Any):
        super().__init__(message, **details)
