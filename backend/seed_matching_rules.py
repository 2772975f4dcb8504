"""
Matching Rule Seed Script

Loads the church's starting rule set and code catalog:
- income rules derived from the offering spreadsheet formulas
- expense rules for recurring payees (utilities, rentals, loan repayment)
- income/expense code catalog used for draft labels

Safe to run repeatedly: existing rules (same pattern, ledger and code) and
codes are left as they are.

Run: python seed_matching_rules.py
"""

import asyncio
from pathlib import Path

from dotenv import load_dotenv
from sqlalchemy import select

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from database import AsyncSessionLocal, MatchingRuleDB, init_db
from logging_config import setup_logging, get_logger
from reconciliation.services.rule_store import RuleStore

logger = get_logger(__name__)

# (pattern, target_code, target_name, priority)
INCOME_RULES = [
    ("십일", 12, "십일조", 10),
    ("건축", 501, "건축헌금", 10),
    ("감사", 13, "감사헌금", 20),
    ("선교", 21, "선교헌금", 10),
    ("주일", 11, "주일헌금", 30),
    ("구제", 22, "구제헌금", 10),
    ("큐티", 24, "큐티", 10),
]

EXPENSE_RULES = [
    ("수도", 63, "수도료", 10),
    ("코원", 62, "가스비", 10),
    ("어린이재단", 53, "어린이재단", 10),
    ("대출", 501, "대출상환", 20),
    ("결산", 94, "결산", 30),
    ("현대엘리", 64, "엘리베이터", 10),
    ("KT801691", 71, "통신비(KT)", 10),
    ("한국전력", 61, "전기료", 10),
    ("진성전기", 64, "전기시설", 10),
    ("전기", 61, "전기료", 30),
    ("LGU", 91, "통신비(LGU)", 20),
    ("렌탈", 64, "렌탈비", 20),
    ("배지윤", 23, "배지윤", 10),
]

INCOME_CATEGORIES = {
    10: "헌금",
    20: "목적헌금",
    30: "잡수입",
    40: "자본수입",
    500: "건축헌금",
}

INCOME_CODES = {
    11: "주일헌금",
    12: "십일조헌금",
    13: "감사헌금",
    14: "특별(절기)헌금",
    15: "어린이부",
    16: "중고",
    17: "청년부",
    19: "기타헌금",
    21: "선교헌금",
    22: "구제헌금",
    23: "전도회비",
    24: "지정헌금",
    31: "이자수입",
    32: "기타잡수입",
    501: "건축헌금",
}

EXPENSE_CATEGORIES = {
    10: "인건비",
    20: "예배비",
    30: "선교비",
    40: "교육비",
    50: "봉사비",
    60: "관리비",
    70: "운영비",
    80: "상회비",
    90: "기타비용",
    100: "예비비",
    500: "건축비",
}

EXPENSE_CODES = {
    23: "배지윤",
    53: "어린이재단",
    61: "전기료",
    62: "가스비",
    63: "수도료",
    64: "시설관리비",
    71: "통신비",
    91: "통신비(LGU)",
    94: "결산",
    501: "대출상환",
}


async def seed_codes(store: RuleStore) -> int:
    count = 0
    for code_type, codes, categories in (
        ("income", INCOME_CODES, INCOME_CATEGORIES),
        ("expense", EXPENSE_CODES, EXPENSE_CATEGORIES),
    ):
        for code, name in codes.items():
            category = code // 10 * 10
            await store.upsert_code(code_type, code, name, category, categories.get(category))
            count += 1
    return count


async def seed_rules(store: RuleStore) -> int:
    added = 0
    for target_type, rules in (("income", INCOME_RULES), ("expense", EXPENSE_RULES)):
        for pattern, code, name, priority in rules:
            existing = await store.db.execute(
                select(MatchingRuleDB.id).where(
                    MatchingRuleDB.pattern == pattern,
                    MatchingRuleDB.target_type == target_type,
                    MatchingRuleDB.target_code == code,
                )
            )
            if existing.scalar_one_or_none() is not None:
                continue
            await store.create_rule(
                pattern=pattern,
                target_type=target_type,
                target_code=code,
                target_name=name,
                priority=priority,
            )
            added += 1
    return added


async def main():
    setup_logging(level="INFO", json_format=False)
    await init_db()

    async with AsyncSessionLocal() as session:
        store = RuleStore(session)
        codes = await seed_codes(store)
        added = await seed_rules(store)

    logger.info(f"Seeded {codes} codes, added {added} matching rules "
                f"({len(INCOME_RULES) + len(EXPENSE_RULES) - added} already present)")


if __name__ == "__main__":
    asyncio.run(main())
