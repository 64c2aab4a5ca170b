# WORKFLOW: Rate-text compiler turning legal duty-rate text into arithmetic formula strings.
# Used by: Rate validator (formula readiness), promotion, enrichment, Chapter-99 synthesizer, rate retrieval
# Functions:
# 1. normalize_rate_text() - Lowercase and canonicalize rate wording
# 2. compile_by_pattern() - Deterministic pattern translation (free, ad valorem, specific, compound, range)
# 3. compile_rate_text() - Pattern translation, note delegation, optional AI fallback
# 4. compile_surcharge() - Surcharge part of a Chapter-99 heading rate ("... + 25%")
# 5. validate_formula() - Arithmetic safety check (character set, keywords, AST, sample evaluation)
# 6. evaluate_formula() - Evaluate a validated formula against value/weight/quantity
# 7. map_unit_to_variable() - Classify a unit code as weight- or count-bearing
#
# Compile flow: Rate text -> Normalize -> Pattern table -> Formula -> Safety validation
# Formulas only use the variables value, weight and quantity with + - * / and parentheses.
# Numeric literals are exact decimals: "5%" -> 0.05, "$2.50/kg" -> 2.50, "25¢" -> 0.25.

"""
Rate-text compiler for HTS duty rates.
"""

import ast
import logging
import math
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from core.exceptions import FormulaSafetyError

logger = logging.getLogger(__name__)

ALLOWED_VARIABLES = ("value", "weight", "quantity")

FORMULA_CHARACTERS = re.compile(r'^[\d\s+\-*/().a-z_]+$')
FORBIDDEN_KEYWORDS = re.compile(
    r'eval|exec|function|=>|require|import|export|async|await|process|global|window|lambda|open|__'
)
NOTE_REFERENCE = re.compile(r'\bnotes?\b', re.IGNORECASE)

SAMPLE_INPUTS = [
    {"value": 1000.0, "weight": 100.0, "quantity": 10.0},
    {"value": 1.0, "weight": 1.0, "quantity": 1.0},
    {"value": 123456.78, "weight": 0.5, "quantity": 2500.0},
]

WEIGHT_UNITS = {
    "kg", "kgs", "kilogram", "kilograms", "gram", "grams", "g", "lb", "lbs", "pound", "pounds",
    "oz", "ounce", "ounces", "ton", "tons", "tonne", "tonnes", "t",
}
COUNT_UNITS = {
    "ea", "each", "unit", "units", "piece", "pieces", "pcs", "item", "items", "article", "articles",
    "number", "no", "doz", "dozen", "pair", "pairs", "pr", "prs", "set", "sets", "gross", "head",
    "thousand", "x",
}
VOLUME_UNITS = {
    "l", "liter", "liters", "litre", "litres", "ml", "milliliter", "milliliters", "gal", "gallon",
    "gallons", "qt", "quart", "quarts", "proofliter", "proofliters", "pfliter", "pfliters", "m3",
}
AREA_LENGTH_UNITS = {
    "sqm", "m2", "squaremeter", "squaremeters", "sqft", "squarefoot", "squarefeet", "m", "meter",
    "meters", "cm", "centimeter", "centimeters", "mm", "millimeter", "millimeters", "ft", "foot",
    "feet", "in", "inch", "inches", "yd", "yard", "yards", "linearmeter", "linearmeters",
}
UNIT_QUALIFIERS = re.compile(r'\b(clean|net|gross|drained|proof|pf\.?|of|content)\b')

AMBIGUOUS_COMPONENT_CONTEXT = re.compile(
    r'\b(case|strap|band|bracelet|battery|movement|jewel|lead content)\b'
)

PERCENT_PATTERN = re.compile(
    r'^(\d+(?:\.\d+)?)\s*(?:%|percent)\s*(?:ad valorem)?'
    r'(?:\s+on\s+the\s+entire\s+(?:set|article|item))?$'
)
RANGE_PATTERN = re.compile(r'^(\d+(?:\.\d+)?)\s*%\s*(?:-|to)\s*(\d+(?:\.\d+)?)\s*%$')
EACH_STYLE_PATTERN = re.compile(
    r'^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*'
    r'(each|ea|item|items|article|articles|unit|units|piece|pieces|pr\.?|pair|pairs|doz\.?|dozen)'
    r'(?:\s+(?:on|of|for)\b.*)?$'
)
PER_UNIT_PATTERN = re.compile(
    r'^([$¢])?\s*(\d+(?:\.\d+)?)\s*(¢|cents?)?\s*(?:/|per)\s*'
    r'([a-z0-9.]+(?:\s+[a-z0-9.]+){0,2})'
    r'(?:\s*(?:/|per)\s*(\d+(?:\.\d+)?))?(?:\b|$)'
    r'(?:\s+(?:on|of|for)\b.*)?$'
)
FREE_PATTERN = re.compile(r'^(free|none|0%?)$|^free\b')
SURCHARGE_PATTERN = re.compile(r'(?:\+|plus)\s*(\d+(?:\.\d+)?)\s*%')
APPLICABLE_SUBHEADING = re.compile(r'duty provided in the applicable subheading')


def _format_decimal(number: Decimal) -> str:
    """Render a decimal without exponent or trailing zeros."""
    text = format(number.normalize(), 'f')
    return "0" if text in ("-0", "") else text


def normalize_rate_text(rate_text: str) -> str:
    """
    Canonicalize rate wording before pattern matching.

    Args:
        rate_text: Raw rate text (e.g., "5% ad val.", "2.5 Cents/kgs")

    Returns:
        Lowercased, whitespace-collapsed text
    """
    text = (rate_text or "").strip().lower()
    text = re.sub(r'\s+', ' ', text)
    text = text.replace('ad val.', 'ad valorem')
    text = re.sub(r'per\s+cent\b', 'percent', text)
    text = re.sub(r'kgs?\b', 'kg', text)
    text = re.sub(r'\bno\.', 'number', text)
    return text


def contains_note_reference(rate_text: Optional[str]) -> bool:
    return bool(rate_text and NOTE_REFERENCE.search(rate_text))


def map_unit_to_variable(unit: str, unit_hint: Optional[str] = None) -> Optional[str]:
    """
    Map a rate unit token to a formula variable.

    Args:
        unit: Unit token from the rate text (e.g., "kg", "doz.", "pf. liter")
        unit_hint: Unit of quantity of the tariff line (e.g., "kg", "No.")

    Returns:
        "weight", "quantity", or None when the unit is unknown
    """
    normalized = (unit or "").lower().strip()
    stripped = re.sub(r'\s+', ' ', UNIT_QUALIFIERS.sub(' ', normalized)).strip()
    candidates = [
        normalized,
        re.sub(r'[^a-z0-9]', '', normalized),
        stripped,
        re.sub(r'[^a-z0-9]', '', stripped),
    ]

    for candidate in candidates:
        if candidate in WEIGHT_UNITS:
            return "weight"
    for candidate in candidates:
        if candidate in COUNT_UNITS or candidate in VOLUME_UNITS or candidate in AREA_LENGTH_UNITS:
            return "quantity"

    if unit_hint:
        hint = re.sub(r'[^a-z0-9]', '', unit_hint.lower())
        if hint and any(hint in candidate for candidate in candidates[1::2]):
            return "quantity"

    logger.debug(f"Unknown unit '{unit}', unable to map to formula variable")
    return None


def _specific_amount(prefix: Optional[str], amount_text: str, suffix: Optional[str],
                     denominator: Optional[Decimal] = None) -> str:
    amount = Decimal(amount_text)
    is_cents = prefix == '¢' or bool(suffix)
    if not is_cents and denominator is None:
        # Dollar amounts keep their written precision ("2.50").
        return amount_text
    if is_cents:
        amount = amount / Decimal(100)
    if denominator is not None:
        amount = amount / denominator
    return _format_decimal(amount)


def _parse_denominator(text: Optional[str]) -> Optional[Decimal]:
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value > 0 else None


def parse_specific_component(rate_text: str, unit_hint: Optional[str] = None) -> Optional[Tuple[str, str]]:
    """
    Parse a specific (per-unit) duty component.

    Args:
        rate_text: Normalized component text (e.g., "$2.50/kg", "0.9 cents each", "89.6 cents/1000")
        unit_hint: Unit of quantity of the tariff line

    Returns:
        (variable, amount literal) or None
    """
    match = EACH_STYLE_PATTERN.match(rate_text)
    if match:
        amount = _specific_amount(match.group(1), match.group(2), match.group(3))
        variable = map_unit_to_variable(match.group(4), unit_hint) or "quantity"
        return variable, amount

    match = PER_UNIT_PATTERN.match(rate_text)
    if not match:
        return None

    token = (match.group(4) or "").strip()
    if re.fullmatch(r'\d+(?:\.\d+)?', token):
        # "89.6 cents/1000": implicit quantity denominator
        amount = _specific_amount(match.group(1), match.group(2), match.group(3), _parse_denominator(token))
        inferred = map_unit_to_variable(unit_hint, unit_hint) if unit_hint else None
        return inferred or "quantity", amount

    variable = map_unit_to_variable(token, unit_hint)
    if not variable:
        return None
    amount = _specific_amount(
        match.group(1), match.group(2), match.group(3), _parse_denominator(match.group(5))
    )
    return variable, amount


def parse_percent_component(rate_text: str) -> Optional[str]:
    """Return the decimal rate literal for a percentage component ("5%" -> "0.05")."""
    match = PERCENT_PATTERN.match(rate_text)
    if not match:
        return None
    return _format_decimal(Decimal(match.group(1)) / Decimal(100))


def _compile_compound(rate_text: str, unit_hint: Optional[str]) -> Optional[Dict[str, Any]]:
    parts = [part.strip() for part in re.split(r'\s*\+\s*', rate_text) if part.strip()]
    if len(parts) < 2 or len(parts) > 3:
        return None
    if AMBIGUOUS_COMPONENT_CONTEXT.search(rate_text):
        return None

    percents = [(index, parse_percent_component(part)) for index, part in enumerate(parts)]
    percents = [(index, rate) for index, rate in percents if rate is not None]
    if len(percents) != 1:
        return None

    percent_index, percent_rate = percents[0]
    specifics = []
    for index, part in enumerate(parts):
        if index == percent_index:
            continue
        component = parse_specific_component(part, unit_hint)
        if component is None:
            return None
        specifics.append(component)

    terms = [f"value * {percent_rate}"] + [f"{variable} * {amount}" for variable, amount in specifics]
    variables = ["value"]
    for variable, _ in specifics:
        if variable not in variables:
            variables.append(variable)

    return {"formula": " + ".join(terms), "variables": variables, "confidence": 0.9}


def compile_by_pattern(rate_text: Optional[str], unit_hint: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Translate rate text into a formula using the deterministic pattern table.

    Args:
        rate_text: Legal rate text (e.g., "5% ad valorem", "$2.50/kg", "Free")
        unit_hint: Unit of quantity of the tariff line

    Returns:
        {"formula", "variables", "confidence", "method": "pattern"} or None if no pattern matches
    """
    if not rate_text or not rate_text.strip():
        return {"formula": "0", "variables": [], "confidence": 1.0, "method": "pattern"}

    text = normalize_rate_text(rate_text)
    result = None

    if FREE_PATTERN.search(text):
        result = {"formula": "0", "variables": [], "confidence": 1.0}

    if result is None:
        percent = parse_percent_component(text)
        if percent is not None:
            result = {"formula": f"value * {percent}", "variables": ["value"], "confidence": 1.0}

    if result is None:
        result = _compile_compound(text, unit_hint)

    if result is None:
        component = parse_specific_component(text, unit_hint)
        if component is not None:
            variable, amount = component
            result = {"formula": f"{variable} * {amount}", "variables": [variable], "confidence": 0.9}

    if result is None:
        range_match = RANGE_PATTERN.match(text)
        if range_match:
            low = min(Decimal(range_match.group(1)), Decimal(range_match.group(2)))
            result = {
                "formula": f"value * {_format_decimal(low / Decimal(100))}",
                "variables": ["value"],
                "confidence": 0.7,
            }

    if result is None:
        return None
    result["method"] = "pattern"
    return result


def compile_rate_text(
    rate_text: Optional[str],
    unit_hint: Optional[str] = None,
    note_resolver: Any = None,
    code: Optional[str] = None,
    source_column: str = "general",
    year: Optional[int] = None,
    assistant: Any = None,
) -> Optional[Dict[str, Any]]:
    """
    Compile rate text into a safe formula.

    Note-referencing text is delegated to the note resolver (exact matches only).
    Text no pattern understands goes to the AI assistant when one is supplied; its
    proposal must pass validate_formula() and has its confidence reduced by 0.1.

    Args:
        rate_text: Legal rate text
        unit_hint: Unit of quantity of the tariff line
        note_resolver: Object with resolve_note_reference(code, text, column, year, exact_only)
        code: HTS code the text belongs to (for note resolution)
        source_column: "general", "other" or "special"
        year: Schedule year (for note resolution)
        assistant: Object with propose(rate_text, unit_hint) -> dict or None

    Returns:
        {"formula", "variables", "confidence", "method"} or None
    """
    if contains_note_reference(rate_text):
        if note_resolver is None:
            return None
        resolved = note_resolver.resolve_note_reference(
            code, rate_text, source_column, year, exact_only=True
        )
        if not resolved or not resolved.get("formula"):
            return None
        is_valid, error = validate_formula(resolved["formula"])
        if not is_valid:
            logger.warning(f"Note formula for {code} rejected: {error}")
            return None
        return {
            "formula": resolved["formula"],
            "variables": resolved.get("variables") or extract_variables(resolved["formula"]),
            "confidence": float(resolved.get("confidence", 1.0)),
            "method": "note",
        }

    result = compile_by_pattern(rate_text, unit_hint)
    if result is not None or assistant is None:
        return result

    try:
        proposal = assistant.propose(rate_text, unit_hint)
    except Exception as e:
        logger.error(f"AI formula generation failed for '{rate_text}': {e}")
        return None
    if not proposal:
        return None

    is_valid, error = validate_formula(proposal["formula"])
    if not is_valid:
        logger.warning(f"AI formula for '{rate_text}' rejected: {error}")
        return None

    confidence = max(0.0, min(1.0, float(proposal.get("confidence", 0.0)) - 0.1))
    return {
        "formula": proposal["formula"],
        "variables": extract_variables(proposal["formula"]),
        "confidence": confidence,
        "method": "ai",
    }


def compile_surcharge(rate_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Surcharge formula of a Chapter-99 heading's rate text.

    "The duty provided in the applicable subheading + 25%" yields "value * 0.25";
    "The duty provided in the applicable subheading" alone passes the base duty through and
    yields a zero surcharge. A plain rate ("7.5%") is compiled by pattern. Free or text with
    no rate yields None.
    """
    if not rate_text or not rate_text.strip():
        return None
    text = normalize_rate_text(rate_text)
    match = SURCHARGE_PATTERN.search(text)
    if match:
        rate = _format_decimal(Decimal(match.group(1)) / Decimal(100))
        return {"formula": f"value * {rate}", "variables": ["value"], "confidence": 1.0, "method": "pattern"}
    if APPLICABLE_SUBHEADING.search(text):
        return {"formula": "0", "variables": [], "confidence": 1.0, "method": "pattern"}
    result = compile_by_pattern(text)
    if result and result["formula"] != "0":
        return result
    return None


def extract_variables(formula: str) -> List[str]:
    """Variables referenced by a formula, in order of first appearance."""
    found: List[str] = []
    for match in re.finditer(r'\b(value|weight|quantity)\b', formula or ""):
        if match.group(1) not in found:
            found.append(match.group(1))
    return found


def _evaluate_node(node: ast.AST, variables: Dict[str, float], formula: str) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate_node(node.body, variables, formula)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return float(node.value)
    if isinstance(node, ast.Name) and node.id in ALLOWED_VARIABLES:
        return float(variables[node.id])
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.UAdd, ast.USub)):
        operand = _evaluate_node(node.operand, variables, formula)
        return operand if isinstance(node.op, ast.UAdd) else -operand
    if isinstance(node, ast.BinOp) and isinstance(node.op, (ast.Add, ast.Sub, ast.Mult, ast.Div)):
        left = _evaluate_node(node.left, variables, formula)
        right = _evaluate_node(node.right, variables, formula)
        if isinstance(node.op, ast.Add):
            return left + right
        if isinstance(node.op, ast.Sub):
            return left - right
        if isinstance(node.op, ast.Mult):
            return left * right
        return left / right
    raise FormulaSafetyError(formula, f"unsupported expression element {type(node).__name__}")


def evaluate_formula(formula: str, variables: Dict[str, float]) -> float:
    """
    Evaluate a formula with the given variable values.

    Args:
        formula: Formula string (e.g., "value * 0.05 + weight * 0.25")
        variables: Mapping with value, weight and quantity

    Returns:
        Result as float

    Raises:
        FormulaSafetyError: If the formula contains unsupported syntax
        ZeroDivisionError: If the formula divides by zero
    """
    try:
        tree = ast.parse(formula.strip(), mode="eval")
    except SyntaxError as e:
        raise FormulaSafetyError(formula, f"invalid syntax: {e.msg}") from e
    values = {name: float(variables.get(name, 0.0)) for name in ALLOWED_VARIABLES}
    return _evaluate_node(tree, values, formula)


def validate_formula(formula: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Check that a formula is safe arithmetic.

    Args:
        formula: Formula string

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not formula or not formula.strip():
        return False, "Formula is empty"
    if FORBIDDEN_KEYWORDS.search(formula):
        return False, "Formula contains forbidden keywords"
    if not FORMULA_CHARACTERS.match(formula):
        return False, "Formula contains invalid characters"

    for sample in SAMPLE_INPUTS:
        try:
            result = evaluate_formula(formula, sample)
        except FormulaSafetyError as e:
            return False, f"Formula failed to evaluate: {e.reason}"
        except (ZeroDivisionError, OverflowError) as e:
            return False, f"Formula failed to evaluate: {e}"
        if not math.isfinite(result):
            return False, "Formula evaluated to a non-finite number"

    return True, None


if __name__ == "__main__":
    test_rates = [
        "Free",
        "5% ad valorem",
        "$2.50/kg",
        "25¢/kg + 5%",
        "0.9 cents each",
        "89.6 cents/1000",
        "5%-10%",
        "See note 2(b)",
    ]

    for rate in test_rates:
        print(f"Compiling: {rate}")
        print(f"Result: {compile_by_pattern(rate, 'kg')}")
        print()
