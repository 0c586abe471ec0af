"""Deterministic helper tools the answering model may call."""
from __future__ import annotations

import ast
import base64
import binascii
import hashlib
import math
import operator
import re
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ragquery.errors import ToolExecutionError


def _function(name: str, description: str, properties: dict[str, Any], required: list[str] | None = None):
    parameters: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        parameters["required"] = required
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


_TZ = {"type": "string", "description": "IANA timezone such as 'UTC' or 'Europe/London'. Defaults to UTC."}
_TEXT = {"type": "string", "description": "Input text"}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _function(
        "get_current_date",
        "Get the current date. Use it for questions about what day or date it is.",
        {
            "format": {
                "type": "string",
                "enum": ["iso", "readable", "day_of_week", "day_name", "full"],
                "description": "'iso' (YYYY-MM-DD), 'readable' (Month Day, Year), 'day_of_week', 'full'",
            },
            "timezone": _TZ,
        },
    ),
    _function(
        "get_current_time",
        "Get the current time.",
        {
            "format": {"type": "string", "enum": ["12h", "24h", "iso", "timestamp"]},
            "timezone": _TZ,
        },
    ),
    _function(
        "calculate",
        "Evaluate a mathematical expression, e.g. '2 + 2', '100 * 0.15', 'sqrt(16)', 'pow(2, 8)'.",
        {"expression": {"type": "string", "description": "Expression to evaluate"}},
        ["expression"],
    ),
    _function(
        "format_date",
        "Reformat a date given as ISO 8601 text or a Unix timestamp.",
        {
            "date": {"type": "string", "description": "Date to format"},
            "output_format": {"type": "string", "enum": ["iso", "readable", "timestamp", "relative"]},
        },
        ["date"],
    ),
    _function(
        "timezone_convert",
        "Convert a time from one timezone to another.",
        {
            "time": {"type": "string", "description": "ISO 8601 time to convert"},
            "from_timezone": _TZ,
            "to_timezone": _TZ,
        },
        ["time", "from_timezone", "to_timezone"],
    ),
    _function(
        "generate_uuid",
        "Generate a UUID.",
        {"version": {"type": "string", "enum": ["v4", "nil"]}},
    ),
    _function(
        "hash_string",
        "Hash text with md5, sha256 or sha512.",
        {"text": _TEXT, "algorithm": {"type": "string", "enum": ["md5", "sha256", "sha512"]}},
        ["text", "algorithm"],
    ),
    _function("base64_encode", "Encode text as base64.", {"text": _TEXT}, ["text"]),
    _function("base64_decode", "Decode base64 to text.", {"text": _TEXT}, ["text"]),
    _function(
        "unit_convert",
        "Convert lengths (km, m, cm, mm, mile, yard, foot, inch) or temperatures (celsius, fahrenheit, kelvin).",
        {
            "value": {"type": "number"},
            "from_unit": {"type": "string"},
            "to_unit": {"type": "string"},
        },
        ["value", "from_unit", "to_unit"],
    ),
    _function(
        "extract_keywords",
        "List the most frequent words of a text.",
        {"text": _TEXT, "max_keywords": {"type": "integer", "description": "Defaults to 10"}},
        ["text"],
    ),
    _function(
        "compare_values",
        "Compare two numbers and report the absolute and percentage difference.",
        {"value1": {"type": "number"}, "value2": {"type": "number"}},
        ["value1", "value2"],
    ),
    _function(
        "format_number",
        "Format a number as currency, percentage, scientific, comma-grouped or ordinal.",
        {
            "number": {"type": "number"},
            "format": {
                "type": "string",
                "enum": ["currency", "percentage", "scientific", "comma", "ordinal"],
            },
        },
        ["number", "format"],
    ),
    _function("validate_url", "Check whether a URL is well formed.", {"url": {"type": "string"}}, ["url"]),
    _function(
        "days_between_dates",
        "Days between two dates (YYYY-MM-DD, ISO 8601 or Unix timestamp). date2 defaults to today.",
        {"date1": {"type": "string"}, "date2": {"type": "string"}},
        ["date1"],
    ),
    _function(
        "extract_entities",
        "Pull dates, URLs and capitalized names out of a text.",
        {"text": _TEXT},
        ["text"],
    ),
]


# --- calculate ---

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}
_UNARY_OPS: dict[type, Callable[[Any], Any]] = {ast.UAdd: operator.pos, ast.USub: operator.neg}
_MATH_FUNCS: dict[str, Callable[..., float]] = {
    "sqrt": math.sqrt,
    "pow": math.pow,
    "abs": abs,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
    "exp": math.exp,
    "ln": math.log,
    "log": math.log10,
    "log2": math.log2,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "min": min,
    "max": max,
}
_CONSTANTS = {"pi": math.pi, "e": math.e}
# results must stay printable; int -> str conversion is capped near 4300 digits
MAX_DIGITS = 4000


def _digits(value: float) -> float:
    magnitude = abs(value)
    return math.log10(magnitude) if magnitude > 1 else 0.0


def _check_size(op: ast.operator, left: float, right: float) -> None:
    """Refuse operations whose result would take unbounded time to build."""
    if isinstance(op, ast.Pow) and right > 0:
        estimate = right * _digits(left) if right > 1 else _digits(left)
    elif isinstance(op, ast.Mult):
        estimate = _digits(left) + _digits(right)
    else:
        return
    if estimate > MAX_DIGITS:
        raise ToolExecutionError("Math evaluation error: result too large")


def _eval_node(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _eval_node(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.Name) and node.id in _CONSTANTS:
        return _CONSTANTS[node.id]
    if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
        left, right = _eval_node(node.left), _eval_node(node.right)
        _check_size(node.op, left, right)
        return _BIN_OPS[type(node.op)](left, right)
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_eval_node(node.operand))
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and node.func.id in _MATH_FUNCS:
        if node.keywords:
            raise ToolExecutionError("Math evaluation error: keyword arguments are not supported")
        return _MATH_FUNCS[node.func.id](*(_eval_node(a) for a in node.args))
    raise ToolExecutionError(f"Math evaluation error: unsupported expression {ast.dump(node)[:60]}")


def _format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return str(value)


def evaluate(expression: str) -> str:
    # "^" is exponentiation for people, xor for Python
    source = expression.replace("^", "**").strip()
    try:
        tree = ast.parse(source, mode="eval")
        return _format_number(_eval_node(tree))
    except ToolExecutionError:
        raise
    except (SyntaxError, ValueError, TypeError, ZeroDivisionError, OverflowError) as e:
        raise ToolExecutionError(f"Math evaluation error: {e}") from e


# --- dates and times ---


def _zone(name: str | None) -> ZoneInfo | timezone:
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ToolExecutionError(f"Unknown timezone: {name}") from e


def parse_date(text: str, default_tz: ZoneInfo | timezone = timezone.utc) -> datetime:
    """Unix timestamp or ISO 8601; naive values are read in ``default_tz``."""
    text = str(text).strip()
    if re.fullmatch(r"-?\d+", text):
        return datetime.fromtimestamp(int(text), tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ToolExecutionError(f"Could not parse date: {text}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


class ToolExecutor:
    """Runs a tool by name; every failure surfaces as ToolExecutionError."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._handlers: dict[str, Callable[[dict[str, Any]], str]] = {
            "get_current_date": self.get_current_date,
            "get_current_time": self.get_current_time,
            "calculate": self.calculate,
            "format_date": self.format_date,
            "timezone_convert": self.timezone_convert,
            "generate_uuid": self.generate_uuid,
            "hash_string": self.hash_string,
            "base64_encode": self.base64_encode,
            "base64_decode": self.base64_decode,
            "unit_convert": self.unit_convert,
            "extract_keywords": self.extract_keywords,
            "compare_values": self.compare_values,
            "format_number": self.format_number,
            "validate_url": self.validate_url,
            "days_between_dates": self.days_between_dates,
            "extract_entities": self.extract_entities,
        }

    @property
    def definitions(self) -> list[dict[str, Any]]:
        return TOOL_DEFINITIONS

    def execute(self, name: str, args: dict[str, Any]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            raise ToolExecutionError(f"Unknown tool: {name}")
        try:
            return handler(args if isinstance(args, dict) else {})
        except ToolExecutionError:
            raise
        except KeyError as e:
            raise ToolExecutionError(f"Missing '{e.args[0]}' parameter") from e
        except (TypeError, ValueError) as e:
            raise ToolExecutionError(f"{name} failed: {e}") from e

    def _now(self, tz_name: str | None = None) -> datetime:
        return self._clock().astimezone(_zone(tz_name))

    def get_current_date(self, args: dict[str, Any]) -> str:
        now = self._now(args.get("timezone"))
        fmt = args.get("format", "readable")
        if fmt == "iso":
            return now.strftime("%Y-%m-%d")
        if fmt in ("day_of_week", "day_name"):
            return now.strftime("%A")
        if fmt == "full":
            return now.strftime("%A, %B %d, %Y at %H:%M:%S %Z")
        return now.strftime("%B %d, %Y")

    def get_current_time(self, args: dict[str, Any]) -> str:
        now = self._now(args.get("timezone"))
        fmt = args.get("format", "24h")
        if fmt == "12h":
            return now.strftime("%I:%M:%S %p %Z")
        if fmt == "iso":
            return now.isoformat()
        if fmt == "timestamp":
            return str(int(now.timestamp()))
        return now.strftime("%H:%M:%S %Z")

    def calculate(self, args: dict[str, Any]) -> str:
        return evaluate(str(args["expression"]))

    def format_date(self, args: dict[str, Any]) -> str:
        dt = parse_date(args["date"])
        fmt = args.get("output_format", "readable")
        if fmt == "iso":
            return dt.isoformat()
        if fmt == "timestamp":
            return str(int(dt.timestamp()))
        if fmt == "relative":
            diff = self._clock() - dt
            if diff.days > 0:
                return f"{diff.days} days ago"
            hours, minutes = int(diff.total_seconds() // 3600), int(diff.total_seconds() // 60)
            if hours > 0:
                return f"{hours} hours ago"
            if minutes > 0:
                return f"{minutes} minutes ago"
            return "just now"
        return dt.strftime("%B %d, %Y at %H:%M:%S")

    def timezone_convert(self, args: dict[str, Any]) -> str:
        dt = parse_date(args["time"], default_tz=_zone(args["from_timezone"]))
        converted = dt.astimezone(_zone(args["to_timezone"]))
        return converted.strftime("%Y-%m-%d %H:%M:%S %Z")

    def generate_uuid(self, args: dict[str, Any]) -> str:
        version = args.get("version", "v4")
        if version == "v4":
            return str(uuid.uuid4())
        if version == "nil":
            return str(uuid.UUID(int=0))
        raise ToolExecutionError("Invalid UUID version")

    def hash_string(self, args: dict[str, Any]) -> str:
        algorithm = str(args["algorithm"]).lower()
        if algorithm not in ("md5", "sha256", "sha512"):
            raise ToolExecutionError("Unsupported algorithm")
        return hashlib.new(algorithm, str(args["text"]).encode("utf-8")).hexdigest()

    def base64_encode(self, args: dict[str, Any]) -> str:
        return base64.b64encode(str(args["text"]).encode("utf-8")).decode("ascii")

    def base64_decode(self, args: dict[str, Any]) -> str:
        try:
            return base64.b64decode(str(args["text"]), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ToolExecutionError(f"Invalid base64 input: {e}") from e

    _METERS = {
        ("km", "kilometer", "kilometers"): 1000.0,
        ("m", "meter", "meters"): 1.0,
        ("cm", "centimeter", "centimeters"): 0.01,
        ("mm", "millimeter", "millimeters"): 0.001,
        ("mile", "miles"): 1609.34,
        ("yard", "yards"): 0.9144,
        ("foot", "feet", "ft"): 0.3048,
        ("inch", "inches", "in"): 0.0254,
    }

    def _meters_per(self, unit: str) -> float:
        for names, factor in self._METERS.items():
            if unit in names:
                return factor
        raise ToolExecutionError(f"Unsupported unit: {unit}")

    def unit_convert(self, args: dict[str, Any]) -> str:
        value = float(args["value"])
        from_unit, to_unit = str(args["from_unit"]).lower(), str(args["to_unit"]).lower()
        temps = {"celsius", "fahrenheit", "kelvin"}
        if from_unit in temps or to_unit in temps:
            if not (from_unit in temps and to_unit in temps):
                raise ToolExecutionError(f"Cannot convert {from_unit} to {to_unit}")
            celsius = {
                "celsius": value,
                "fahrenheit": (value - 32.0) * 5.0 / 9.0,
                "kelvin": value - 273.15,
            }[from_unit]
            result = {
                "celsius": celsius,
                "fahrenheit": celsius * 9.0 / 5.0 + 32.0,
                "kelvin": celsius + 273.15,
            }[to_unit]
        else:
            result = value * self._meters_per(from_unit) / self._meters_per(to_unit)
        return f"{_format_number(value)} {args['from_unit']} = {_format_number(round(result, 6))} {args['to_unit']}"

    def extract_keywords(self, args: dict[str, Any]) -> str:
        limit = int(args.get("max_keywords") or 10)
        words = [w.strip(".,;:!?\"'()[]").lower() for w in str(args["text"]).split()]
        counts = Counter(w for w in words if len(w) > 3)
        return ", ".join(f"{word} ({count}x)" for word, count in counts.most_common(limit))

    def compare_values(self, args: dict[str, Any]) -> str:
        a, b = float(args["value1"]), float(args["value2"])
        diff = abs(a - b)
        pct = diff / abs(b) * 100.0 if b else 0.0
        a_s, b_s, d_s = _format_number(a), _format_number(b), _format_number(diff)
        if a > b:
            return f"{a_s} is {d_s} larger than {b_s} (difference: {diff:.2f}, {pct:.1f}% more)"
        if a < b:
            return f"{a_s} is {d_s} smaller than {b_s} (difference: {diff:.2f}, {pct:.1f}% less)"
        return f"{a_s} and {b_s} are equal"

    def format_number(self, args: dict[str, Any]) -> str:
        number = float(args["number"])
        fmt = args["format"]
        if fmt == "currency":
            return f"${number:,.2f}"
        if fmt == "percentage":
            return f"{number * 100:.1f}%"
        if fmt == "scientific":
            return f"{number:.2e}"
        if fmt == "comma":
            return f"{number:,.0f}"
        if fmt == "ordinal":
            n = int(number)
            suffix = "th" if n % 100 in (11, 12, 13) else {1: "st", 2: "nd", 3: "rd"}.get(n % 10, "th")
            return f"{n}{suffix}"
        raise ToolExecutionError(f"Unsupported format: {fmt}")

    def validate_url(self, args: dict[str, Any]) -> str:
        url = str(args["url"])
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            return f"Invalid URL: {url}"
        return f"Valid URL\nDomain: {parsed.hostname or 'N/A'}\nPath: {parsed.path or '/'}\nScheme: {parsed.scheme}"

    def days_between_dates(self, args: dict[str, Any]) -> str:
        first = parse_date(args["date1"])
        second_text = args.get("date2")
        second = parse_date(second_text) if second_text else self._clock()
        days = (second - first).days
        label = second_text or "today"
        if days > 0:
            return f"{days} days from {args['date1']} to {label}"
        if days < 0:
            return f"{abs(days)} days ago (from {args['date1']} to {label})"
        return "0 days (same date)"

    def extract_entities(self, args: dict[str, Any]) -> str:
        text = str(args["text"])
        entities = [f"Date: {m}" for m in re.findall(r"\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4}", text)]
        entities += [f"URL: {m}" for m in re.findall(r"https?://\S+", text)]
        for name in re.findall(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b", text):
            if len(name) > 2 and not any(name in e for e in entities):
                entities.append(f"Potential entity: {name}")
        return "\n".join(entities) if entities else "No entities found"
