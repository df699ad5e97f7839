"""
Model pricing table for codesession.

PURPOSE: Per-model token rates used to estimate AI cost when a caller logs
usage without an explicit cost.
AI CONTEXT: Built-in defaults merged with an optional user override file
(~/.codesession/pricing.json). Overrides win. Rates are dollars per 1M
tokens (Config.PRICING_SCALE).

OVERRIDE FILE FORMAT:
    {
      "my-local-model": {"input": 0.5, "output": 1.5},
      "openai/gpt-4o": {"input": 2.0, "output": 8.0}
    }

Keys may be a bare model name or "provider/model"; lookups try the
provider-qualified key first.

ERROR HANDLING:
A missing, unreadable or non-JSON override file is ignored and the
defaults are used. Individual entries without numeric input/output rates
are skipped.
"""

from __future__ import annotations

import json
import logging
import os
from typing import TYPE_CHECKING

from .config import Config
from .filesystem import RealFileSystem

if TYPE_CHECKING:
    from .filesystem import FileSystem

__all__ = ["DEFAULT_PRICING", "PricingTable", "ModelRates"]

logger = logging.getLogger(__name__)

ModelRates = dict[str, float]

DEFAULT_PRICING: dict[str, ModelRates] = {
    # Anthropic
    "claude-opus-4-6": {"input": 15.0, "output": 75.0},
    "claude-sonnet-4-5": {"input": 3.0, "output": 15.0},
    "claude-sonnet-4": {"input": 3.0, "output": 15.0},
    "claude-haiku-3.5": {"input": 0.80, "output": 4.0},
    # OpenAI
    "gpt-4o": {"input": 2.50, "output": 10.0},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1": {"input": 2.0, "output": 8.0},
    "gpt-4.1-mini": {"input": 0.40, "output": 1.60},
    "gpt-4.1-nano": {"input": 0.10, "output": 0.40},
    "o3": {"input": 2.0, "output": 8.0},
    "o4-mini": {"input": 1.10, "output": 4.40},
    # Google
    "gemini-2.5-pro": {"input": 1.25, "output": 10.0},
    "gemini-2.5-flash": {"input": 0.15, "output": 0.60},
    "gemini-2.0-flash": {"input": 0.10, "output": 0.40},
    # DeepSeek
    "deepseek-r1": {"input": 0.55, "output": 2.19},
    "deepseek-v3": {"input": 0.27, "output": 1.10},
}


def _valid_rates(value: object) -> bool:
    if not isinstance(value, dict):
        return False
    for key in ("input", "output"):
        rate = value.get(key)
        if isinstance(rate, bool) or not isinstance(rate, int | float) or rate < 0:
            return False
    return True


class PricingTable:
    """
    Built-in pricing defaults plus user overrides.

    The override file is re-read on every load() so that a `pricing set`
    from another process is seen without restarting a long-running tracker.

    Example:
        >>> table = PricingTable(config_dir="/tmp/cs")
        >>> table.get("gpt-4o")
        {'input': 2.5, 'output': 10.0}
    """

    def __init__(
        self,
        config_dir: str | None = None,
        filesystem: FileSystem | None = None,
    ) -> None:
        """
        Args:
            config_dir: Directory holding pricing.json. Default: Config.data_dir()
            filesystem: FileSystem implementation. Default: RealFileSystem
        """
        self._fs: FileSystem = filesystem or RealFileSystem()
        self.config_dir = config_dir or Config.data_dir()
        self.path = os.path.join(self.config_dir, Config.PRICING_FILE)

    def _read_overrides(self) -> dict[str, ModelRates]:
        if not self._fs.exists(self.path):
            return {}
        try:
            data = json.loads(self._fs.read_text(self.path))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable pricing overrides {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring pricing overrides {self.path}: expected a JSON object")
            return {}

        overrides: dict[str, ModelRates] = {}
        for model, rates in data.items():
            if _valid_rates(rates):
                overrides[model] = {"input": float(rates["input"]), "output": float(rates["output"])}
            else:
                logger.warning(f"Ignoring malformed pricing entry for {model!r}")
        return overrides

    def load(self) -> dict[str, ModelRates]:
        """
        Get the merged pricing table.

        Returns:
            Mapping of model key to {"input": rate, "output": rate}, with
            user overrides taking precedence over defaults.
        """
        merged = {model: dict(rates) for model, rates in DEFAULT_PRICING.items()}
        merged.update(self._read_overrides())
        return merged

    def get(self, model: str, provider: str | None = None) -> ModelRates | None:
        """
        Look up rates for a model.

        Tries "provider/model" first (when provider is given), then the bare
        model name.

        Returns:
            Rates dict, or None if the model is unknown.
        """
        table = self.load()
        if provider:
            qualified = table.get(f"{provider}/{model}")
            if qualified is not None:
                return qualified
        return table.get(model)

    def set_price(self, model: str, input_rate: float, output_rate: float) -> None:
        """
        Store a user override for one model.

        Existing overrides are kept; a corrupt override file is replaced.

        Raises:
            ValueError: If either rate is negative.
        """
        if input_rate < 0 or output_rate < 0:
            raise ValueError("Pricing rates must be non-negative")
        overrides = self._read_overrides()
        overrides[model] = {"input": float(input_rate), "output": float(output_rate)}
        self._fs.makedirs(self.config_dir, exist_ok=True)
        self._fs.write_text(self.path, json.dumps(overrides, indent=2))
        logger.info(f"Pricing for {model} set to ${input_rate}/${output_rate} per 1M tokens")

    def reset(self) -> None:
        """Drop all user overrides, restoring the built-in defaults."""
        if self._fs.exists(self.path):
            self._fs.write_text(self.path, "{}")
            logger.info("Pricing overrides reset to defaults")
