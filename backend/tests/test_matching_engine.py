"""
Unit Tests for the matching engine and draft builder

Tests:
- Suppression before rules
- Deposit fallback to the default income code
- Review items for unmatched withdrawals
- Input-order independence
- Direction isolation over generated mixed batches
- Draft freezing and edits

Run with: pytest backend/tests/test_matching_engine.py -v
"""

import random
from datetime import date

import pytest

from reconciliation.errors import FrozenDraftError, ValidationError
from reconciliation.matching_rules import RuleSet, SuppressionFilter
from reconciliation.models import (
    ClassificationCode,
    ExpenseDraft,
    IncomeDraft,
    MatchingRule,
    PatternType,
    TargetType,
    TransactionState,
)
from reconciliation.services.draft_builder import (
    DEFAULT_CLASSIFICATION_SUFFIX,
    DraftBuilder,
    ManualClassification,
    apply_edits,
    default_income_code,
)
from reconciliation.services.matching_engine import MatchingEngine

RULES = [
    MatchingRule(id=1, pattern_type=PatternType.CONTAINS, pattern="십일", target_type=TargetType.INCOME,
                 target_code=12, target_name="십일조", priority=10),
    MatchingRule(id=2, pattern_type=PatternType.CONTAINS, pattern="코원", target_type=TargetType.EXPENSE,
                 target_code=62, target_name="가스비", priority=10),
    MatchingRule(id=3, pattern_type=PatternType.CONTAINS, pattern="카드", target_type=TargetType.EXPENSE,
                 target_code=90, priority=10),
]


@pytest.fixture
def engine():
    return MatchingEngine(
        rule_set=RuleSet(RULES),
        suppression_filter=SuppressionFilter(card_settlement_patterns=["nh카드"]),
        draft_builder=DraftBuilder([
            ClassificationCode(code_type=TargetType.EXPENSE, code=62, name="가스비", category_code=60),
        ]),
    )


class TestMatchingRun:
    """Test one matching pass."""

    def test_rule_match_builds_expense_draft(self, engine, make_tx):
        tx = make_tx(withdrawal=41000, description="코원에너지서비스", detail="3월분")
        result = engine.run([tx])

        assert len(result.expense_drafts) == 1
        draft = result.expense_drafts[0]
        assert isinstance(draft, ExpenseDraft)
        assert draft.transaction_id == tx.id
        assert draft.amount == 41000
        assert draft.account_code == 62
        assert draft.category_code == 60
        assert draft.code_name == "가스비"
        assert draft.date == date(2025, 3, 9)
        assert draft.transaction_date == date(2025, 3, 4)
        assert draft.rule_id == 2
        assert draft.confidence == 0.9

    def test_rule_match_builds_income_draft(self, engine, make_tx):
        tx = make_tx(deposit=300000, description="십일조", detail="김성도")
        draft = engine.run([tx]).income_drafts[0]
        assert isinstance(draft, IncomeDraft)
        assert draft.code == 12
        assert draft.donor_name == "김성도"
        assert draft.amount == 300000

    def test_suppression_runs_before_rules(self, engine, make_tx):
        # "카드" has an expense rule but NH card settlements are suppressed first
        tx = make_tx(withdrawal=250000, description="NH카드 결제")
        result = engine.run([tx])
        assert result.expense_drafts == []
        assert len(result.suppressed) == 1
        assert result.suppressed[0].reason == "card_settlement"

    def test_unmatched_deposit_gets_default_code(self, engine, make_tx):
        tx = make_tx(deposit=30000, description="홍길동")
        result = engine.run([tx])

        assert result.review_items == []
        draft = result.income_drafts[0]
        assert draft.code == 19
        assert draft.code_name == "기타헌금"
        assert draft.rule_id is None
        assert draft.note.endswith(DEFAULT_CLASSIFICATION_SUFFIX)

    def test_unmatched_withdrawal_needs_review(self, engine, make_tx):
        result = engine.run([make_tx(tx_id="BANK-R", withdrawal=15000, description="다이소")])
        assert result.expense_drafts == []
        assert len(result.review_items) == 1
        assert result.review_items[0].transaction.id == "BANK-R"
        assert result.review_items[0].transaction.state == TransactionState.PENDING
        assert result.summary["needs_review"] == 1

    def test_ineligible_states_are_skipped(self, engine, make_tx):
        confirmed = make_tx(tx_id="BANK-C", withdrawal=41000, description="코원", state=TransactionState.CONFIRMED)
        matched = make_tx(tx_id="BANK-M", withdrawal=41000, description="코원", state=TransactionState.MATCHED)
        result = engine.run([confirmed, matched])
        assert result.skipped_ids == ["BANK-C", "BANK-M"]
        assert result.total_processed == 0

        rerun = engine.run([confirmed, matched], include_matched=True)
        assert [d.transaction_id for d in rerun.expense_drafts] == ["BANK-M"]

    def test_result_does_not_depend_on_input_order(self, engine, make_tx):
        transactions = [
            make_tx(tx_id=f"BANK-{i}", withdrawal=1000 * (i + 1), description=desc, day=date(2025, 3, 1 + i % 3))
            for i, desc in enumerate(["코원", "다이소", "NH카드", "코원가스", "문구점"])
        ] + [make_tx(tx_id="BANK-D", deposit=50000, description="십일조")]

        forward = engine.run(transactions, run_id="run")
        backward = engine.run(list(reversed(transactions)), run_id="run")

        assert forward.to_dict() == backward.to_dict()


class TestDirectionIsolation:
    """Test that income rules only see deposits and expense rules only see withdrawals."""

    SHARED_RULES = [
        MatchingRule(id=1, pattern_type=PatternType.CONTAINS, pattern="선교", target_type=TargetType.INCOME,
                     target_code=21, target_name="선교헌금", priority=10),
        MatchingRule(id=2, pattern_type=PatternType.CONTAINS, pattern="선교", target_type=TargetType.EXPENSE,
                     target_code=55, target_name="선교비", priority=10),
        MatchingRule(id=3, pattern_type=PatternType.CONTAINS, pattern="건축", target_type=TargetType.INCOME,
                     target_code=501, target_name="건축헌금", priority=20),
        MatchingRule(id=4, pattern_type=PatternType.EXACT, pattern="건축 자재", target_type=TargetType.EXPENSE,
                     target_code=84, target_name="건축비", priority=5),
        MatchingRule(id=5, pattern_type=PatternType.REGEX, pattern=r"후원\s*\d*", target_type=TargetType.EXPENSE,
                     target_code=53, target_name="후원금", priority=30),
    ]
    DESCRIPTIONS = ["선교헌금", "선교사 후원", "건축", "건축 자재", "후원 3", "다이소", "홍길동"]

    def mixed_batch(self, make_tx, seed: int, size: int = 200):
        rng = random.Random(seed)
        batch = []
        for i in range(size):
            amount = rng.randint(1, 500) * 1000
            kwargs = {"deposit": amount} if rng.random() < 0.5 else {"withdrawal": amount}
            batch.append(make_tx(
                tx_id=f"BANK-MIX-{i:03d}",
                description=rng.choice(self.DESCRIPTIONS),
                day=date(2025, 3, rng.randint(1, 31)),
                balance=i,
                **kwargs,
            ))
        return batch

    @pytest.mark.parametrize("seed", [7, 2025, 31337])
    def test_generated_batch_never_crosses_ledgers(self, make_tx, seed):
        engine = MatchingEngine(rule_set=RuleSet(self.SHARED_RULES), suppression_filter=SuppressionFilter())
        batch = self.mixed_batch(make_tx, seed)
        by_id = {tx.id: tx for tx in batch}

        result = engine.run(batch)

        assert all(by_id[d.transaction_id].deposit > 0 for d in result.income_drafts)
        assert all(by_id[d.transaction_id].withdrawal > 0 for d in result.expense_drafts)
        assert all(item.transaction.withdrawal > 0 for item in result.review_items)
        assert {d.code for d in result.income_drafts} <= {21, 501, 19}
        assert {d.account_code for d in result.expense_drafts} <= {55, 84, 53}
        assert len(result.income_drafts) == sum(1 for tx in batch if tx.deposit > 0)
        assert len(result.expense_drafts) + len(result.review_items) == sum(1 for tx in batch if tx.withdrawal > 0)


class TestDefaultIncomeCode:
    """Test the fallback income classification."""

    def test_uncategorized(self):
        assert default_income_code(30000) == (19, "기타헌금")

    def test_amount_heuristic(self):
        assert default_income_code(30000, "amount_heuristic") == (11, "주일헌금")
        assert default_income_code(123000, "amount_heuristic") == (12, "십일조")
        assert default_income_code(100000, "amount_heuristic") == (13, "감사헌금")


class TestDrafts:
    """Test draft freezing, edits and manual classification."""

    def test_frozen_draft_rejects_edits(self, engine, make_tx):
        draft = engine.run([make_tx(withdrawal=41000, description="코원")]).expense_drafts[0]
        draft.freeze()

        with pytest.raises(FrozenDraftError):
            draft.amount = 1
        with pytest.raises(FrozenDraftError):
            apply_edits(draft, vendor="다른업체")
        assert draft.amount == 41000

    def test_apply_edits(self, engine, make_tx):
        draft = engine.run([make_tx(withdrawal=41000, description="코원")]).expense_drafts[0]
        apply_edits(draft, vendor="코원에너지", amount=40000)
        assert draft.vendor == "코원에너지"
        assert draft.amount == 40000

    def test_apply_edits_rejects_read_only_fields(self, engine, make_tx):
        draft = engine.run([make_tx(withdrawal=41000, description="코원")]).expense_drafts[0]
        with pytest.raises(ValidationError):
            apply_edits(draft, transaction_id="BANK-OTHER")

    def test_classification_must_fit_direction(self, make_tx):
        with pytest.raises(ValidationError):
            DraftBuilder().draft_for_target(make_tx(deposit=1000), TargetType.EXPENSE, 62)

    def test_manual_classification(self, make_tx):
        tx = make_tx(withdrawal=15000, description="다이소", detail="청소용품")
        draft = DraftBuilder().draft_from_review(
            tx, ManualClassification(target_type=TargetType.EXPENSE, code=64, name="시설관리비", vendor="다이소"),
        )
        assert draft.manual is True
        assert draft.confidence == 1.0
        assert draft.vendor == "다이소"
        assert draft.category_code == 60
        assert draft.amount == 15000
