"""Document question-answering retrieval core."""

from .config import Settings
from .service import Capabilities, DocQAService

__all__ = ["Capabilities", "DocQAService", "Settings"]
