from .field_state import FieldState
from .workspace import Workspace

__all__ = ["FieldState", "Workspace"]
