"""Prompt templates for marketplace listing generation."""

from __future__ import annotations

from schemas import LISTING_CONDITIONS

SYSTEM_PROMPT = (
    "You are an expert secondhand marketplace seller assistant. You analyze product photos "
    "and produce high-quality listing information.\n\n"
    "Guidelines:\n"
    "- Write compelling, keyword-rich titles (50-80 characters)\n"
    "- Write detailed descriptions with bullet points for key features\n"
    "- Extract accurate item specifics (brand, model, size, color, material, style)\n"
    "- Assess condition honestly based on visible wear and flaws\n"
    "- Suggest realistic pricing based on condition and market value\n\n"
    "Output ONLY valid JSON matching the required schema. No markdown, code fences or commentary."
)

JSON_SCHEMA_INSTRUCTIONS = (
    "Output format (JSON only, no markdown):\n"
    "{\n"
    '  "title": "string (50-80 chars)",\n'
    '  "description": "string (detailed, 200+ chars)",\n'
    f'  "condition": "one of: {", ".join(LISTING_CONDITIONS)}",\n'
    '  "itemSpecifics": {\n'
    '    "brand": "string or null",\n'
    '    "model": "string or null",\n'
    '    "size": "string or null",\n'
    '    "color": "string or null",\n'
    '    "material": "string or null",\n'
    '    "style": "string or null"\n'
    "  },\n"
    '  "pricing": {\n'
    '    "min": number,\n'
    '    "max": number,\n'
    '    "suggested": number,\n'
    '    "confidence": number (0-1),\n'
    '    "currency": "USD",\n'
    '    "reasoning": "string (optional)"\n'
    "  },\n"
    '  "keywords": ["string", ...],\n'
    '  "categoryId": "string or null",\n'
    '  "visibleFlaws": ["string", ...],\n'
    '  "aiConfidence": number (0-1)\n'
    "}"
)


def build_analysis_prompt(image_count: int) -> str:
    """Build the user instruction for `image_count` attached photos."""
    conditions = "\n".join(f"   - {label}" for label in LISTING_CONDITIONS)
    return (
        "Analyze these product images and generate a complete marketplace listing draft.\n\n"
        f"Images: {image_count} photo(s) provided\n\n"
        "Requirements:\n"
        "1. Title: compelling, keyword-rich, 50-80 characters\n"
        "2. Description: detailed and professional, with bullet points covering key features, "
        "condition details, visible flaws or wear, what's included and shipping considerations\n"
        "3. Item Specifics: brand, model or part number, size or dimensions, color, material, "
        "style. Use null when not visible\n"
        f"4. Condition: choose the most accurate of:\n{conditions}\n"
        "5. Visible Flaws: scratches, dents, wear, missing parts, etc.\n"
        "6. Pricing: realistic range from condition, comparable listings and market value, "
        "with a confidence level (0-1)\n"
        "7. Keywords: 5-10 relevant search keywords\n"
        "8. Category: marketplace category ID if possible\n\n"
        "Be thorough and accurate. If something cannot be determined from the images, use null.\n\n"
        f"{JSON_SCHEMA_INSTRUCTIONS}"
    )
