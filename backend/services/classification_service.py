"""Rule tables for classifying holdings into asset types and sectors.

Classification is data, not control flow: each table is an ordered list of
:class:`Rule` entries and :func:`first_match` returns the value of the
first rule that matches. New cues are added by editing a table.
"""

import re
from dataclasses import dataclass

from integrations.provider_protocol import (
    MUTUAL_FUND_TYPES,
    RETIREMENT_TYPES,
    AssetType,
)


# Text fields a rule can look at
DECLARED = "declared"  # the asset type column as written in the file
NAME = "name"  # investment / fund name
CATEGORY = "category"  # category or sub-category column, if present
SYMBOL = "symbol"
EXCHANGE = "exchange"


@dataclass(frozen=True)
class Rule:
    """One entry of a classification table.

    The rule matches when any pattern in ``any_of`` is found in any of the
    ``fields``, and every pattern in ``requires`` is found somewhere in the
    combined text of all fields.
    """

    value: str
    any_of: tuple[str, ...]
    fields: tuple[str, ...] = (DECLARED, NAME, CATEGORY)
    requires: tuple[str, ...] = ()

    def matches(self, texts: dict[str, str]) -> bool:
        haystacks = [texts.get(f, "") for f in self.fields]
        if not any(
            re.search(p, h, re.IGNORECASE) for p in self.any_of for h in haystacks if h
        ):
            return False
        combined = " ".join(v for v in texts.values() if v)
        return all(re.search(p, combined, re.IGNORECASE) for p in self.requires)


def first_match(rules: list[Rule], texts: dict[str, str], default: str) -> str:
    """Return the value of the first matching rule, or ``default``."""
    for rule in rules:
        if rule.matches(texts):
            return rule.value
    return default


_FUND = r"\bfund\b|mutual|\bmf\b|\bscheme\b|direct plan|\bgrowth\b|\bidcw\b"

ASSET_TYPE_RULES: list[Rule] = [
    # Retirement schemes are only recognised from the declared type
    Rule(AssetType.EPF.value, (r"\bepf\b", r"employees?'? provident"), fields=(DECLARED,)),
    Rule(AssetType.PPF.value, (r"\bppf\b", r"public provident"), fields=(DECLARED,)),
    Rule(AssetType.NPS.value, (r"\bnps\b", r"national pension"), fields=(DECLARED,)),
    Rule(
        AssetType.US_STOCK.value,
        (r"\bus\b", r"u\.s\.", r"international", r"global stock", r"foreign"),
        fields=(DECLARED,),
    ),
    Rule(AssetType.SGB.value, (r"\bsgb", r"sovereign gold")),
    Rule(AssetType.REIT.value, (r"\breits?\b", r"\binvits?\b")),
    Rule(AssetType.ETF.value, (r"\betfs?\b", r"bees\b")),
    Rule(
        AssetType.COMMODITY_MF.value,
        (r"\bgold\b", r"\bsilver\b", r"commodit"),
        fields=(NAME, CATEGORY),
        requires=(_FUND,),
    ),
    Rule(
        AssetType.DEBT_MF.value,
        (
            r"\bdebt\b", r"\bliquid\b", r"\bgilt\b", r"money market", r"overnight",
            r"corporate bond", r"banking (&|and) psu", r"short (term|duration)",
            r"dynamic bond", r"credit risk",
        ),
        fields=(NAME, CATEGORY),
        requires=(_FUND,),
    ),
    Rule(AssetType.MUTUAL_FUND.value, (_FUND,)),
    Rule(AssetType.BOND.value, (r"\bbonds?\b", r"debenture", r"\bncds?\b", r"g-?sec", r"t-?bill")),
    Rule(AssetType.EQUITY.value, (r"stock", r"equit", r"share"), fields=(DECLARED,)),
    Rule(AssetType.COMMODITY.value, (r"\bgold\b", r"\bsilver\b", r"commodit"), fields=(DECLARED,)),
]

BROKER_SYMBOL_RULES: list[Rule] = [
    Rule(AssetType.SGB.value, (r"^SGB",), fields=(SYMBOL,)),
    Rule(AssetType.ETF.value, (r"BEES", r"ETF"), fields=(SYMBOL,)),
    Rule(AssetType.COMMODITY.value, (r"^MCX$",), fields=(EXCHANGE,)),
    Rule(AssetType.INDEX.value, (r"NIFTY", r"SENSEX"), fields=(SYMBOL,)),
]

_SECTOR_FIELDS = (NAME, SYMBOL, CATEGORY)

SECTOR_RULES: list[Rule] = [
    Rule("Commodity", (r"\bgold", r"\bsilver", r"commodit", r"\bsgb"), _SECTOR_FIELDS),
    Rule("Index", (r"nifty", r"sensex", r"\bindex\b"), _SECTOR_FIELDS),
    Rule("Debt", (r"\bdebt\b", r"\bliquid\b", r"\bgilt\b", r"\bbonds?\b", r"money market"), _SECTOR_FIELDS),
    Rule("Diversified", (r"diversified", r"flexi", r"multi ?cap", r"\bhybrid\b"), _SECTOR_FIELDS),
    Rule("IT", (r"\bit\b", r"\btech", r"software", r"infosys", r"\btcs\b", r"wipro", r"\bhcl"), _SECTOR_FIELDS),
    Rule("Banking", (r"\bbank", r"hdfc", r"icici", r"\baxis\b", r"kotak", r"\bsbi"), _SECTOR_FIELDS),
    Rule("Financial Services", (r"financ", r"insurance"), _SECTOR_FIELDS),
    Rule("Pharma", (r"pharma", r"health", r"medic", r"hospital"), _SECTOR_FIELDS),
    Rule("Auto", (r"\bauto", r"motor", r"tesla"), _SECTOR_FIELDS),
    Rule("Power", (r"\bpower\b", r"energy", r"\bntpc\b"), _SECTOR_FIELDS),
    Rule("Telecom", (r"telecom", r"airtel", r"\bjio\b"), _SECTOR_FIELDS),
    Rule("Metals", (r"metal", r"steel", r"mining"), _SECTOR_FIELDS),
    Rule("FMCG", (r"fmcg", r"consumer"), _SECTOR_FIELDS),
    Rule("Real Estate", (r"realty", r"real estate", r"\breits?\b", r"embassy"), _SECTOR_FIELDS),
]


def classify_asset_type(
    declared: str, name: str = "", category: str = "", default: AssetType = AssetType.OTHER
) -> AssetType:
    """Map a declared asset type plus free-text cues to an AssetType."""
    texts = {DECLARED: declared, NAME: name, CATEGORY: category}
    return AssetType(first_match(ASSET_TYPE_RULES, texts, default.value))


def classify_broker_symbol(symbol: str, exchange: str = "") -> AssetType:
    """Guess the asset type of a broker holding from its symbol and exchange."""
    texts = {SYMBOL: symbol.upper(), EXCHANGE: exchange.upper()}
    return AssetType(first_match(BROKER_SYMBOL_RULES, texts, AssetType.EQUITY.value))


def classify_sector(name: str, symbol: str = "", category: str = "", default: str = "Other") -> str:
    """Keyword cascade over name, symbol and category."""
    texts = {NAME: name, SYMBOL: symbol, CATEGORY: category}
    return first_match(SECTOR_RULES, texts, default)


def guess_exchange(asset_type: AssetType, isin: str | None = None) -> str:
    """Best-effort exchange for holdings whose source does not report one."""
    if (isin and isin.upper().startswith("US")) or asset_type == AssetType.US_STOCK:
        return "NASDAQ"
    if asset_type in MUTUAL_FUND_TYPES:
        return "MF"
    if asset_type in RETIREMENT_TYPES:
        return "Govt"
    return "NSE"
