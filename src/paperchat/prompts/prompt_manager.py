import inspect
import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from src.paperchat.config import PROMPT_TEMPLATES_DIR
from src.paperchat.prompts import prompt_rules

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = "system_prompt.jinja2"
TITLE_PROMPT_TEMPLATE = "title_prompt.jinja2"


class PromptManager:
    """
    Manages loading and rendering of Jinja2 prompt templates.
    """
    def __init__(self, template_dir: Optional[Path] = None):
        """Initializes the PromptManager."""
        template_dir = Path(template_dir) if template_dir else PROMPT_TEMPLATES_DIR
        if not template_dir.exists():
            logger.error("Prompt template directory not found at: %s", template_dir)
            raise FileNotFoundError(f"Prompt template directory not found: {template_dir}")

        self.env = Environment(
            loader=FileSystemLoader(template_dir),
            autoescape=select_autoescape(),
            undefined=StrictUndefined,
        )
        self._load_prompt_rules_as_globals()

    def _load_prompt_rules_as_globals(self):
        """
        Inspects the prompt_rules module and loads all uppercase constants
        as global variables in the Jinja2 environment.
        """
        for name, value in inspect.getmembers(prompt_rules):
            if name.isupper() and isinstance(value, (str, int)):
                self.env.globals[name] = value

    def render(self, template_name: str, **kwargs) -> str:
        """
        Renders a prompt template with the given context.

        Args:
            template_name: The name of the template file (e.g., 'system_prompt.jinja2').
            **kwargs: The context variables to pass to the template.

        Returns:
            The rendered prompt string, or an empty string if rendering failed.
        """
        try:
            template = self.env.get_template(template_name)
            return template.render(**kwargs)
        except Exception as e:
            logger.error("Failed to render prompt template '%s': %s", template_name, e, exc_info=True)
            return ""

    def system_prompt(self, custom_prompt: Optional[str] = None) -> str:
        """The user's custom prompt (or the default one) followed by the formatting rules."""
        base_prompt = (custom_prompt or "").strip() or prompt_rules.DEFAULT_SYSTEM_PROMPT
        rendered = self.render(SYSTEM_PROMPT_TEMPLATE, base_prompt=base_prompt)
        return rendered or base_prompt

    def title_prompt(self) -> str:
        return self.render(TITLE_PROMPT_TEMPLATE, max_length=prompt_rules.TITLE_MAX_LENGTH)


@lru_cache(maxsize=1)
def default_prompt_manager() -> PromptManager:
    return PromptManager()
