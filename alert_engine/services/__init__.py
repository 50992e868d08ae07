"""
Services package
"""
from alert_engine.services.condition_evaluator import evaluate, evaluate_condition
from alert_engine.services.rules_engine import RulesEngine, route, test_rule
from alert_engine.services.dedup_index import DedupIndex, DedupOutcome
from alert_engine.services.correlation_service import CorrelationEngine, correlate
from alert_engine.services.ingestion_pipeline import IngestionPipeline

__all__ = [
    "evaluate",
    "evaluate_condition",
    "RulesEngine",
    "route",
    "test_rule",
    "DedupIndex",
    "DedupOutcome",
    "CorrelationEngine",
    "correlate",
    "IngestionPipeline",
]
