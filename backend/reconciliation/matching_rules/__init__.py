"""
Matching rules: rule evaluation, suppression predicates and text normalization.
"""

from reconciliation.matching_rules.normalization import (
    normalize_text,
    searchable_text,
    extract_key_pattern,
)
from reconciliation.matching_rules.rule_set import RuleSet, compile_pattern, CONFIDENCE_BY_PATTERN
from reconciliation.matching_rules.suppression import SuppressionFilter, transaction_fingerprint

__all__ = [
    'normalize_text',
    'searchable_text',
    'extract_key_pattern',
    'RuleSet',
    'compile_pattern',
    'CONFIDENCE_BY_PATTERN',
    'SuppressionFilter',
    'transaction_fingerprint',
]
