"""Intent understanding and context analysis components"""

from .slot_extractor import SlotExtractor, Extraction
from .declining_detector import DecliningIntentDetector

__all__ = [
    'SlotExtractor',
    'Extraction',
    'DecliningIntentDetector',
]
