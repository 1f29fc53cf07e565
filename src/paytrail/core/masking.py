"""
Data masking engine for sensitive value detection and masking.

Applies an ordered list of pattern -> replacement rules to free text before
it reaches any log sink. Rules run one after another, each on the output of
the previous one, so the order of the list is part of the contract: IBANs are
handled before card numbers, and card numbers before the generic digit-group
rules (phone, national id).

Every replacement keeps some structure for support work (prefix, suffix,
domain) and never matches its own detection pattern, which makes
``mask(mask(text)) == mask(text)``.
"""

import dataclasses
import json
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Pattern, Tuple, Union

import structlog
from pydantic import BaseModel

from ..config import get_settings
from .exceptions import InvalidMaskingRuleError

logger = structlog.get_logger(__name__)

Replacement = Union[str, Callable[["re.Match[str]"], str]]

CARD_MASK = "******"
IBAN_MASK = "************"
SECURITY_CODE_MASK = "***"

_GROUP_REFERENCE = re.compile(r"\\(\d+)|\\g<(\w+)>")


@dataclasses.dataclass(frozen=True)
class MaskingRule:
    """A compiled detection pattern and the replacement applied to its matches."""

    name: str
    pattern: Pattern[str]
    replacement: Replacement

    @classmethod
    def compile(
        cls,
        name: str,
        pattern: Union[str, Pattern[str]],
        replacement: Replacement,
        flags: int = 0,
    ) -> "MaskingRule":
        """
        Build a rule, failing fast on malformed configuration.

        Raises:
            InvalidMaskingRuleError: if the pattern does not compile or the
                replacement template references a group the pattern lacks.
        """
        if isinstance(pattern, str):
            try:
                compiled = re.compile(pattern, flags)
            except re.error as e:
                raise InvalidMaskingRuleError(name, pattern, str(e)) from e
        else:
            compiled = pattern

        if isinstance(replacement, str):
            _check_template(name, compiled, replacement)
        elif not callable(replacement):
            raise InvalidMaskingRuleError(
                name, compiled.pattern, "replacement must be a template string or a callable"
            )

        return cls(name=name, pattern=compiled, replacement=replacement)

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


def _check_template(name: str, pattern: Pattern[str], template: str) -> None:
    """Reject templates whose group references cannot resolve at mask time."""
    for number, group_name in _GROUP_REFERENCE.findall(template):
        if number and int(number) > pattern.groups:
            raise InvalidMaskingRuleError(
                name, pattern.pattern, f"template references missing group \\{number}"
            )
        if group_name:
            if group_name.isdigit():
                if int(group_name) > pattern.groups:
                    raise InvalidMaskingRuleError(
                        name, pattern.pattern, f"template references missing group {group_name}"
                    )
            elif group_name not in pattern.groupindex:
                raise InvalidMaskingRuleError(
                    name, pattern.pattern, f"template references unknown group {group_name}"
                )


def _mask_iban(match: "re.Match[str]") -> str:
    compact = match.group(0).replace(" ", "")
    return f"{compact[:4]}{IBAN_MASK}{compact[-4:]}"


def _mask_card_number(match: "re.Match[str]") -> str:
    digits = re.sub(r"\D", "", match.group(0))
    return f"{digits[:6]}{CARD_MASK}{digits[-4:]}"


def default_rules() -> List[MaskingRule]:
    """
    Built-in rule set.

    A starting template for French payment services rather than a complete
    PII catalogue; pass ``rules=`` to :class:`MaskingEngine` to replace it.
    """
    return [
        # FR7630006000011234567890189 / FR76 3000 6000 0112 3456 7890 189
        #   -> FR76************0189
        MaskingRule.compile(
            "iban",
            r"\b[A-Z]{2}\d{2}(?:[A-Z0-9]{11,30}|(?: [A-Z0-9]{4}){2,7}(?: [A-Z0-9]{1,4})?)\b",
            _mask_iban,
        ),
        # 4532015112345678 / 4532-0151-1234-5678 -> 453201******5678
        MaskingRule.compile(
            "card_number",
            r"\b(?:[3-6]\d{12,18}"
            r"|[3-6]\d{3}(?:[ -]\d{4}){3}(?:[ -]\d{1,3})?"
            r"|3\d{3}[ -]\d{6}[ -]\d{5})\b",
            _mask_card_number,
        ),
        # jean.dupont@email.com -> j***@email.com
        MaskingRule.compile(
            "email",
            r"\b([A-Za-z0-9])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b",
            r"\1***@\2",
        ),
        # 0612345678 / +33612345678 / 06 12 34 56 78 -> 06******78
        MaskingRule.compile(
            "phone_number",
            r"(?<![\w+])(\+33|0033|0)\s?([1-9])(?:[\s.-]?\d{2}){3}[\s.-]?(\d{2})\b",
            r"\1\2******\3",
        ),
        # "cvv": "123" / cvc=789 -> "cvv": "***"
        MaskingRule.compile(
            "security_code",
            r"(cvv2?|cvc2?|cvn)([\"':\s=]*)(\d{3,4})(?!\d)",
            r"\1\2" + SECURITY_CODE_MASK,
            flags=re.IGNORECASE,
        ),
        # 1 85 12 75 108 123 45 -> 1 85 ** ** *** *** **
        MaskingRule.compile(
            "national_id",
            r"\b([12])\s?(\d{2})\s?(\d{2})\s?(\d{2})\s?(\d{3})\s?(\d{3})\s?(\d{2})\b",
            r"\1 \2 ** ** *** *** **",
        ),
    ]


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, bytes):
        return f"<{len(obj)} bytes>"
    return str(obj)


def to_loggable_text(obj: Any) -> str:
    """
    Serialize any value to text suitable for masking.

    JSON is preferred so structured payloads keep their shape; objects that
    cannot be serialized fall back to ``str()`` and finally to a type marker.
    """
    if isinstance(obj, str):
        return obj
    try:
        return json.dumps(obj, default=_json_default, ensure_ascii=False)
    except Exception:
        try:
            return str(obj)
        except Exception:
            return f"<unprintable {type(obj).__name__}>"


class MaskingEngine:
    """
    Applies masking rules to free text.

    Features:
    - Ordered, immutable rule set (built-in defaults or a full replacement)
    - Extra rules appended after the defaults
    - Fail-fast validation of patterns at construction time
    - Mask-time failures isolated per rule, never raised to the caller
    """

    def __init__(
        self,
        rules: Optional[Iterable[MaskingRule]] = None,
        extra_rules: Iterable[MaskingRule] = (),
        enabled: bool = True,
        on_rule_failure: Optional[Callable[[str], None]] = None,
    ) -> None:
        base = list(rules) if rules is not None else default_rules()
        self._rules: Tuple[MaskingRule, ...] = tuple(base) + tuple(extra_rules)
        self.enabled = enabled
        self._on_rule_failure = on_rule_failure

    @property
    def rules(self) -> Tuple[MaskingRule, ...]:
        return self._rules

    def add_rule(
        self,
        name: str,
        pattern: Union[str, Pattern[str]],
        replacement: Replacement,
        flags: int = 0,
    ) -> MaskingRule:
        """
        Append a rule evaluated after every existing one.

        Meant to be called while the application is being set up; the rule
        tuple is swapped in one assignment so concurrent readers see either
        the old or the new set.
        """
        rule = MaskingRule.compile(name, pattern, replacement, flags)
        self._rules = self._rules + (rule,)
        logger.debug("Masking rule added", rule=name, position=len(self._rules))
        return rule

    def mask(self, text: Optional[str]) -> Optional[str]:
        """
        Mask sensitive values in ``text``.

        Args:
            text: Text to mask; ``None`` and empty strings are returned as is

        Returns:
            The masked text. A rule that fails is skipped and the remaining
            rules still apply.
        """
        if not text or not self.enabled:
            return text

        result = text
        for rule in self._rules:
            try:
                result = rule.apply(result)
            except Exception as e:
                logger.debug(
                    "Masking rule failed, skipping",
                    rule=rule.name,
                    error_type=type(e).__name__,
                )
                if self._on_rule_failure is not None:
                    try:
                        self._on_rule_failure(rule.name)
                    except Exception as callback_error:
                        logger.debug(
                            "Masking failure callback failed",
                            rule=rule.name,
                            error_type=type(callback_error).__name__,
                        )
        return result

    def mask_value(self, value: Any) -> Optional[str]:
        """Serialize an arbitrary value and mask the resulting text."""
        if value is None:
            return None
        return self.mask(to_loggable_text(value))


# Global masking engine instance
_masking_engine: Optional[MaskingEngine] = None


def build_masking_engine() -> MaskingEngine:
    """Create an engine from the current settings."""
    settings = get_settings()
    extra_rules = [
        MaskingRule.compile(rule.name, rule.pattern, rule.replacement)
        for rule in settings.masking.extra_rules
    ]
    from .metrics import get_metrics_collector

    metrics = get_metrics_collector()
    return MaskingEngine(
        rules=[] if settings.masking.replace_defaults else None,
        extra_rules=extra_rules,
        enabled=settings.masking.enabled,
        on_rule_failure=metrics.record_masking_failure,
    )


def get_masking_engine() -> MaskingEngine:
    """Get or create the global masking engine instance."""
    global _masking_engine

    if _masking_engine is None:
        _masking_engine = build_masking_engine()
        # After assignment: log processors read the global engine
        logger.info(
            "Masking engine initialized",
            enabled=_masking_engine.enabled,
            rules=[rule.name for rule in _masking_engine.rules],
        )

    return _masking_engine


def reset_masking_engine() -> None:
    """Drop the global engine so the next call rebuilds it from settings."""
    global _masking_engine
    _masking_engine = None
