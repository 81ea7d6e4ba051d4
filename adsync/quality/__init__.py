"""
Data Quality Module
"""
from .validators import DataValidator, ValidationResult, validate_page
from .anomaly_detector import AnomalyDetector, AnomalyReport, Baseline
from .delivery import DeliveryAnalyzer, DeliveryReport

__all__ = [
    "DataValidator",
    "ValidationResult",
    "validate_page",
    "AnomalyDetector",
    "AnomalyReport",
    "Baseline",
    "DeliveryAnalyzer",
    "DeliveryReport",
]
