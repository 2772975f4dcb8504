"""
Rule Store

Matching rules, suppression rules and the code catalog. Rules are data:
they are validated when written and loaded as an immutable snapshot at
the start of every run.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import (
    ClassificationCodeDB,
    MatchingRuleDB,
    SuppressionRuleDB,
    utc_now,
)
from reconciliation.errors import FatalConfigError, RuleError, ValidationError
from reconciliation.models import (
    BankTransaction,
    ClassificationCode,
    Direction,
    MatchingRule,
    PatternType,
    SuppressionRule,
    TargetType,
)
from reconciliation.matching_rules.normalization import extract_key_pattern, normalize_text
from reconciliation.matching_rules.rule_set import compile_pattern

logger = logging.getLogger(__name__)

RULE_FIELDS = {"pattern_type", "pattern", "target_type", "target_code", "target_name", "priority", "active"}
MIN_LEARNED_PATTERN_LENGTH = 2


@dataclass
class RuleSnapshot:
    """Point-in-time rule configuration for one run."""
    rules: List[MatchingRule] = field(default_factory=list)
    suppression_rules: List[SuppressionRule] = field(default_factory=list)
    codes: List[ClassificationCode] = field(default_factory=list)
    errors: List[RuleError] = field(default_factory=list)


class RuleStore:
    """Repository for rules and codes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== SNAPSHOT ====================

    async def load_snapshot(self) -> RuleSnapshot:
        """
        Load all rules and codes.

        Raises:
            FatalConfigError: the store could not be read
        """
        snapshot = RuleSnapshot()
        try:
            rule_rows = (await self.db.execute(
                select(MatchingRuleDB).where(MatchingRuleDB.active.is_(True))
            )).scalars().all()
            suppression_rows = (await self.db.execute(
                select(SuppressionRuleDB).where(SuppressionRuleDB.active.is_(True))
            )).scalars().all()
            code_rows = (await self.db.execute(
                select(ClassificationCodeDB).where(ClassificationCodeDB.active.is_(True))
            )).scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Rule store unavailable: {e}")
            raise FatalConfigError(f"Rule store unavailable: {e}")

        for row in rule_rows:
            try:
                snapshot.rules.append(MatchingRule.from_row(row))
            except ValueError as e:
                snapshot.errors.append(RuleError(f"Malformed rule: {e}", rule_id=row.id, pattern=row.pattern))

        for row in suppression_rows:
            try:
                snapshot.suppression_rules.append(SuppressionRule.from_row(row))
            except ValueError as e:
                snapshot.errors.append(RuleError(f"Malformed suppression rule: {e}", rule_id=row.id, pattern=row.pattern))

        for row in code_rows:
            snapshot.codes.append(ClassificationCode(
                code_type=TargetType(row.code_type),
                code=row.code,
                name=row.name,
                category_code=row.category_code,
                category_name=row.category_name,
            ))

        return snapshot

    # ==================== MATCHING RULES ====================

    async def list_rules(self, target_type: Optional[str] = None, include_inactive: bool = False) -> List[MatchingRule]:
        query = select(MatchingRuleDB)
        if target_type:
            query = query.where(MatchingRuleDB.target_type == TargetType(target_type).value)
        if not include_inactive:
            query = query.where(MatchingRuleDB.active.is_(True))
        query = query.order_by(MatchingRuleDB.priority, MatchingRuleDB.id)
        result = await self.db.execute(query)
        return [MatchingRule.from_row(row) for row in result.scalars().all()]

    async def get_rule(self, rule_id: int) -> Optional[MatchingRule]:
        row = await self.db.get(MatchingRuleDB, rule_id, populate_existing=True)
        return MatchingRule.from_row(row) if row else None

    async def create_rule(
        self,
        pattern: str,
        target_type: str,
        target_code: int,
        pattern_type: str = PatternType.CONTAINS.value,
        target_name: Optional[str] = None,
        priority: int = 100,
        learned: bool = False,
    ) -> MatchingRule:
        """
        Raises:
            RuleError: the pattern does not compile
            ValidationError: bad target type or code
        """
        target = self._validate_target(target_type, target_code)
        compile_pattern(pattern_type, pattern)

        row = MatchingRuleDB(
            pattern_type=PatternType(pattern_type).value,
            pattern=pattern.strip(),
            target_type=target.value,
            target_code=target_code,
            target_name=target_name,
            priority=priority,
            active=True,
            usage_count=0,
            learned=learned,
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)

        logger.info(f"Created {target.value} rule {row.id}: {row.pattern_type} '{row.pattern}' -> {target_code}")
        return MatchingRule.from_row(row)

    async def update_rule(self, rule_id: int, **changes) -> MatchingRule:
        row = await self.db.get(MatchingRuleDB, rule_id)
        if row is None:
            raise ValidationError(f"Rule {rule_id} not found", parameter="rule_id")

        unknown = set(changes) - RULE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}", parameter=sorted(unknown)[0])

        pattern_type = changes.get("pattern_type", row.pattern_type)
        pattern = changes.get("pattern", row.pattern)
        compile_pattern(pattern_type, pattern, rule_id=rule_id)
        self._validate_target(changes.get("target_type", row.target_type), changes.get("target_code", row.target_code))

        for name, value in changes.items():
            if name in ("pattern_type", "target_type"):
                value = str(getattr(value, "value", value))
            setattr(row, name, value)
        row.updated_at = utc_now()

        await self.db.commit()
        await self.db.refresh(row)
        return MatchingRule.from_row(row)

    async def deactivate_rule(self, rule_id: int) -> bool:
        result = await self.db.execute(
            update(MatchingRuleDB)
            .where(MatchingRuleDB.id == rule_id)
            .values(active=False, updated_at=utc_now())
        )
        await self.db.commit()
        return result.rowcount == 1

    async def increment_usage(self, rule_ids: Iterable[int]) -> None:
        """Count how often each rule produced a draft."""
        counts = Counter(rid for rid in rule_ids if rid is not None)
        if not counts:
            return
        try:
            for rule_id, count in counts.items():
                await self.db.execute(
                    update(MatchingRuleDB)
                    .where(MatchingRuleDB.id == rule_id)
                    .values(usage_count=MatchingRuleDB.usage_count + count)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Failed to update rule usage counts: {e}")

    async def learn_from_classification(
        self,
        tx: BankTransaction,
        target_type: str,
        code: int,
        name: Optional[str] = None,
        priority: int = 1000,
    ) -> Optional[MatchingRule]:
        """
        Turn a manual classification into a reusable rule.

        The key pattern is extracted from description and detail. An existing
        rule with the same pattern and target is reinforced instead of duplicated.
        Learned rules get a low priority so curated rules keep precedence.
        """
        pattern = extract_key_pattern(f"{tx.description} {tx.detail}")
        if len(normalize_text(pattern)) < MIN_LEARNED_PATTERN_LENGTH:
            logger.info(f"No usable pattern in transaction {tx.id}, nothing learned")
            return None

        target = TargetType(target_type)
        result = await self.db.execute(
            select(MatchingRuleDB).where(
                MatchingRuleDB.pattern == pattern,
                MatchingRuleDB.target_type == target.value,
                MatchingRuleDB.target_code == code,
            )
        )
        existing = result.scalars().first()

        if existing:
            existing.usage_count = (existing.usage_count or 0) + 1
            existing.active = True
            existing.updated_at = utc_now()
            await self.db.commit()
            await self.db.refresh(existing)
            logger.info(f"Reinforced rule {existing.id} '{pattern}' from manual classification")
            return MatchingRule.from_row(existing)

        rule = await self.create_rule(
            pattern=pattern,
            target_type=target.value,
            target_code=code,
            pattern_type=PatternType.CONTAINS.value,
            target_name=name,
            priority=priority,
            learned=True,
        )
        return rule

    @staticmethod
    def _validate_target(target_type: str, target_code: int) -> TargetType:
        try:
            target = TargetType(target_type)
        except ValueError:
            raise ValidationError(f"Unknown target type '{target_type}'", parameter="target_type")
        if not isinstance(target_code, int) or target_code <= 0:
            raise ValidationError("target_code must be a positive integer", parameter="target_code")
        return target

    # ==================== SUPPRESSION RULES ====================

    async def list_suppression_rules(self, include_inactive: bool = False) -> List[SuppressionRule]:
        query = select(SuppressionRuleDB)
        if not include_inactive:
            query = query.where(SuppressionRuleDB.active.is_(True))
        result = await self.db.execute(query.order_by(SuppressionRuleDB.priority, SuppressionRuleDB.id))
        return [SuppressionRule.from_row(row) for row in result.scalars().all()]

    async def create_suppression_rule(
        self,
        pattern: str,
        reason: str,
        pattern_type: str = PatternType.CONTAINS.value,
        direction: str = "any",
        priority: int = 100,
    ) -> SuppressionRule:
        compile_pattern(pattern_type, pattern)
        if direction not in ("any", Direction.DEPOSIT.value, Direction.WITHDRAWAL.value):
            raise ValidationError(f"Unknown direction '{direction}'", parameter="direction")
        if not reason or not reason.strip():
            raise ValidationError("reason is required", parameter="reason")

        row = SuppressionRuleDB(
            pattern_type=PatternType(pattern_type).value,
            pattern=pattern.strip(),
            reason=reason.strip(),
            direction=direction,
            priority=priority,
            active=True,
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)
        return SuppressionRule.from_row(row)

    async def deactivate_suppression_rule(self, rule_id: int) -> bool:
        result = await self.db.execute(
            update(SuppressionRuleDB).where(SuppressionRuleDB.id == rule_id).values(active=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    # ==================== CODE CATALOG ====================

    async def list_codes(self, code_type: Optional[str] = None) -> List[Dict[str, Any]]:
        query = select(ClassificationCodeDB).where(ClassificationCodeDB.active.is_(True))
        if code_type:
            query = query.where(ClassificationCodeDB.code_type == TargetType(code_type).value)
        result = await self.db.execute(query.order_by(ClassificationCodeDB.code_type, ClassificationCodeDB.code))
        return [
            {
                "code_type": row.code_type,
                "code": row.code,
                "name": row.name,
                "category_code": row.category_code,
                "category_name": row.category_name,
            }
            for row in result.scalars().all()
        ]

    async def upsert_code(
        self,
        code_type: str,
        code: int,
        name: str,
        category_code: Optional[int] = None,
        category_name: Optional[str] = None,
    ) -> None:
        result = await self.db.execute(
            select(ClassificationCodeDB).where(
                ClassificationCodeDB.code_type == TargetType(code_type).value,
                ClassificationCodeDB.code == code,
            )
        )
        row = result.scalars().first()
        if row is None:
            row = ClassificationCodeDB(code_type=TargetType(code_type).value, code=code)
            self.db.add(row)
        row.name = name
        row.category_code = category_code
        row.category_name = category_name
        row.active = True
        await self.db.commit()
