from __future__ import annotations


VISION_SYSTEM_PROMPT = "You are an OCR engine for supermarket aisle signs. Extract exactly what is visible."


def vision_user_prompt() -> str:
    return (
        "Return ONLY a single JSON object with keys:\n"
        "- aisle_code: aisle number/identifier exactly as seen (trimmed) or null\n"
        "- title_original: short main title as seen (trimmed) or null\n"
        "- title_en: English translation of title_original (trimmed) or null\n"
        "- keywords_original: 3-12 phrases taken from the sign (keep the original language/script)\n"
        "- keywords_en: English translations of keywords_original (same count and order)\n"
        "- language: ISO 639-1 code if possible, else null\n"
        "Do not invent categories that are not on the sign. If unsure, return fewer items."
    )


SUGGEST_SYSTEM_PROMPT = """You are an assistant that maps grocery products to store aisles.
You receive:
1. A product name.
2. A list of aisles, each with: id, nameOrNumber, keywords (like the text on the aisle sign).

Your task:
- Guess which aisle(s) are the best matches for the product.
- Return up to 3 candidates sorted from best to worst.
- If no aisle fits reasonably, set not_found = true and candidates = [].

Confidence:
- Use these labels: "sure", "likely", "maybe", "uncertain".
- confidence_score must be a number between 0.0 and 1.0.
- "sure" >= 0.85, "likely" 0.7-0.85, "maybe" 0.4-0.7, "uncertain" < 0.4.

Output MUST be a single JSON object exactly in this schema:
{
  "candidates": [
    {
      "aisleId": "<string (one of the aisle ids given)>",
      "confidence_label": "<sure|likely|maybe|uncertain>",
      "confidence_score": <number 0.0-1.0>,
      "reason": "<short explanation in English>"
    }
  ],
  "not_found": <true|false>
}"""


def suggest_user_prompt(product_name: str, aisles_json: str) -> str:
    return f'Product: "{product_name}"\n\nAisles JSON:\n{aisles_json}'
