from pathlib import Path

import yaml
from pydantic import ValidationError

from src.rules.models import HandoffRules


def _strip_markdown_fences(content: str) -> str:
    """
    Return the first ```yaml fenced block, or the whole content if none.
    """
    yaml_lines = []
    in_block = False
    found_block = False

    for line in content.splitlines():
        stripped = line.strip()
        if stripped.startswith("```yaml"):
            in_block = True
            found_block = True
            continue
        if in_block and stripped.startswith("```"):
            break
        if in_block:
            yaml_lines.append(line)

    if found_block:
        return "\n".join(yaml_lines)
    return content


def parse_rules(content: str) -> HandoffRules:
    """
    Validate rules given as YAML text.
    Raises ValueError on bad YAML or a schema violation.
    """
    try:
        data = yaml.safe_load(_strip_markdown_fences(content))
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in rules file: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Rules file must contain a mapping at the top level")

    try:
        return HandoffRules.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Rules validation failed:\n{e}") from e


def load_rules(path: Path) -> HandoffRules:
    """
    Load and validate the rules file.
    Raises FileNotFoundError if file missing.
    Raises ValueError if the YAML or the schema is invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found at: {path}")

    return parse_rules(path.read_text(encoding="utf-8"))


def load_rules_or_default(path: Path) -> HandoffRules:
    """Like load_rules, but a missing file yields the built-in defaults."""
    if not path.exists():
        return HandoffRules()
    return load_rules(path)
