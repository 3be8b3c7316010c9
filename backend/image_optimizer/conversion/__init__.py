from .service import ConversionOrchestrator
from .models import ConversionReport, ConversionResult, ConversionTask, OnDemandResult, Priority, TaskStatus, SupportedFormats
from .converters import Converter, ConverterFactory
from .artifacts import ArtifactStore

__all__ = [
    "ConversionOrchestrator",
    "ConversionReport",
    "ConversionResult",
    "ConversionTask",
    "OnDemandResult",
    "Priority",
    "TaskStatus",
    "SupportedFormats",
    "Converter",
    "ConverterFactory",
    "ArtifactStore",
]
