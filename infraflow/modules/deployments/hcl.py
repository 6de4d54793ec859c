import logging
from typing import Any, Dict, List

import hcl2

from infraflow.modules.deployments.exceptions import InvalidDescriptionError

logger = logging.getLogger(__name__)

# Blocks the orchestrator writes itself into every workspace (providers.tf / backend.tf)
RESERVED_TOP_LEVEL_BLOCKS = ("terraform",)


def parse_description(infra_description: str) -> Dict[str, Any]:
    """
    Parse a Terraform description into python-hcl2's structured form,
    normalized to plain labels. Raises InvalidDescriptionError if the text
    is empty or not valid HCL.
    """
    if not infra_description or not infra_description.strip():
        raise InvalidDescriptionError("Terraform code is required")
    try:
        parsed = hcl2.loads(infra_description)
    except Exception as e:
        logger.info(f"Rejected unparseable description: {type(e).__name__}")
        raise InvalidDescriptionError(f"Syntax error in Terraform code: {str(e)}")
    return normalize_parsed(parsed)


def normalize_parsed(value: Any) -> Any:
    """
    Strip the markers newer python-hcl2 releases add: quoted block labels and
    string literals (`'"region"'`) and `__is_block__`-style metadata keys.
    Output of older releases passes through unchanged.
    """
    if isinstance(value, dict):
        return {
            _unquote(key): normalize_parsed(item)
            for key, item in value.items()
            if not _is_marker(key)
        }
    if isinstance(value, list):
        return [normalize_parsed(item) for item in value]
    if isinstance(value, str):
        return _unquote(value)
    return value


def _is_marker(key: Any) -> bool:
    return isinstance(key, str) and len(key) > 4 and key.startswith("__") and key.endswith("__")


def _unquote(text: Any) -> Any:
    if isinstance(text, str) and len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return text[1:-1]
    return text


def check_description(infra_description: str) -> List[str]:
    """
    Syntax-check a description before any record or job is created.
    Returns a list of non-fatal warnings, raises InvalidDescriptionError on hard errors.
    """
    parsed = parse_description(infra_description)
    warnings = []

    if not any(key in parsed for key in ("resource", "module", "data")):
        warnings.append("Configuration declares no resources, modules or data sources")

    for block in RESERVED_TOP_LEVEL_BLOCKS:
        if block in parsed:
            warnings.append(
                f"Top-level '{block}' block found; provider requirements are generated automatically and may conflict"
            )

    if 'variable' in parsed:
        for var_name, var_config in _iter_blocks(parsed['variable']):
            if isinstance(var_config, dict) and 'description' not in var_config:
                warnings.append(f"Variable '{var_name}' is missing a description")

    return warnings


def _iter_blocks(block: Any):
    # HCL2 returns labelled blocks either as a dict or as a list of single-key dicts
    if isinstance(block, dict):
        yield from block.items()
    elif isinstance(block, list):
        for item in block:
            if isinstance(item, dict):
                yield from item.items()
