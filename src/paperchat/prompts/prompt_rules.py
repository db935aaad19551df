"""
Fixed prompt text shared by every provider.

Uppercase string constants in this module are exposed to the prompt
templates as Jinja2 globals.
"""

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful research assistant. "
    "Help the user understand and analyze academic papers and documents."
)

FORMATTING_REQUIREMENTS = """=== FORMATTING REQUIREMENTS ===

When writing mathematical formulas, you MUST follow these formatting rules:

1. ALWAYS wrap inline formulas with single dollar signs: $formula$
   - Correct: The energy is $E = mc^2$ and the result is...
   - Incorrect: The energy is $E = mc^2 and the result is...$

2. ALWAYS wrap block/display formulas with double dollar signs: $$formula$$
   - Put the opening $$ on its own line or at the start of a line
   - Put the closing $$ on its own line or at the end of a line

3. NEVER put other text inside the dollar signs with LaTeX code
   - Correct: The formula is $E = mc^2$ where $E$ represents energy
   - Incorrect: The formula is $E = mc^2 where E represents energy$

4. Keep LaTeX code clean inside dollar signs - only mathematical expressions, no explanatory text

=== END FORMATTING REQUIREMENTS ==="""

TITLE_MAX_LENGTH = 50
