# WORKFLOW: LLM assistant proposing formulas for rate text no deterministic pattern understands.
# Used by: Rate-text compiler (compile_rate_text) when AI fallback is enabled
# Functions:
# 1. propose() - Ask the model for {formula, variables, confidence} as JSON
# 2. _parse_response() - Validate the JSON shape before the compiler's safety check
#
# Fallback flow: Unmatched rate text -> Prompt -> Ollama -> JSON -> Shape check -> Safety validator
# The assistant never bypasses validate_formula(); the compiler lowers its confidence by 0.1.

from typing import Any, Dict, Optional
import json
import logging
import re

import ollama

from core.config import settings

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """
Convert this customs duty rate into a mathematical formula.

Rate: "{rate_text}"
Unit of Quantity: {unit}

Available variables:
- value: The declared value of the goods (in dollars)
- weight: Weight in kg
- quantity: Number of items

Rules:
1. Use only the operators *, +, -, / and parentheses
2. For percentages, convert to decimal (5% -> 0.05)
3. For specific duties, use the appropriate variable
4. For compound rates, combine with +
5. Return 0 for "Free" or no duty
6. Use the lower value for ranges

Return ONLY a JSON object with keys: formula, variables, confidence (0.0-1.0).
JSON:
"""


class FormulaAssistant:
    """LLM-backed formula proposals."""

    def __init__(self, client: Any = None, model: Optional[str] = None):
        self.client = client or ollama.Client(host=settings.ollama_url)
        self.model = model or settings.llm_model

    def propose(self, rate_text: str, unit_hint: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Propose a formula for rate text.

        Args:
            rate_text: Rate text no pattern matched
            unit_hint: Unit of quantity of the tariff line

        Returns:
            {"formula", "variables", "confidence"} or None if the response is unusable
        """
        prompt = PROMPT_TEMPLATE.format(rate_text=rate_text, unit=unit_hint or "Not specified")
        response = self.client.generate(
            model=self.model,
            prompt=prompt,
            options={"temperature": 0.1, "num_predict": 200},
        )
        return self._parse_response(response.get("response", ""))

    def _parse_response(self, text: str) -> Optional[Dict[str, Any]]:
        match = re.search(r'\{.*\}', text or "", re.DOTALL)
        if not match:
            logger.warning("Formula assistant returned no JSON object")
            return None
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning(f"Formula assistant returned invalid JSON: {e}")
            return None

        formula = data.get("formula")
        variables = data.get("variables")
        confidence = data.get("confidence")
        if not isinstance(formula, str) or not formula.strip():
            return None
        if not isinstance(variables, list):
            return None
        if not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            return None

        return {"formula": formula.strip(), "variables": variables, "confidence": float(confidence)}
