from dataclasses import dataclass
import os


@dataclass
class Reorder:
    DEBOUNCE: float = float(os.getenv("REORDER_DEBOUNCE", "0.2"))
