# widgetsmith/services/render_runtime.py
"""
Runner executed inside the sandbox.

This file is copied verbatim into each sandbox scratch directory and started
with `python -I -S`, so it must only depend on the standard library. It reads
the generated code from WIDGET_CODE_PATH and the parameters from
WIDGET_PARAMETERS, runs `render(params)` against restricted builtins plus the
helper functions below, and prints exactly one JSON line to stdout:

    {"status": "success", "output": <render return value>}
    {"status": "error", "message": "..."}

Anything the generated code prints goes to stderr.
"""
import builtins
import html
import json
import os
import random as _random
import sys
from datetime import datetime

ALLOWED_MODULES = frozenset({
    "math", "datetime", "json", "random", "html", "re", "string", "itertools",
    "functools", "statistics", "colorsys", "textwrap", "zoneinfo", "time",
})

_SAFE_BUILTIN_NAMES = (
    "abs", "all", "any", "bin", "bool", "chr", "dict", "divmod", "enumerate",
    "filter", "float", "format", "frozenset", "hash", "hex", "int", "isinstance",
    "issubclass", "iter", "len", "list", "map", "max", "min", "next", "oct", "ord",
    "pow", "range", "repr", "reversed", "round", "set", "slice", "sorted", "str",
    "sum", "tuple", "zip", "callable",
    "Exception", "ArithmeticError", "AttributeError", "IndexError", "KeyError",
    "LookupError", "StopIteration", "TypeError", "ValueError", "ZeroDivisionError",
    "property", "staticmethod", "classmethod", "object",
    "__build_class__",
)


# -----------------------------------------------------------------------------
# Helpers available to generated code
# -----------------------------------------------------------------------------

def format_date(date=None, fmt="YYYY-MM-DD"):
    d = date if isinstance(date, datetime) else (datetime.fromisoformat(date) if date else datetime.now())
    replacements = {
        "YYYY": f"{d.year:04d}",
        "MM": f"{d.month:02d}",
        "DD": f"{d.day:02d}",
        "HH": f"{d.hour:02d}",
        "mm": f"{d.minute:02d}",
        "ss": f"{d.second:02d}",
    }
    result = fmt or "YYYY-MM-DD"
    for key, value in replacements.items():
        result = result.replace(key, value)
    return result


def format_number(num, decimals=2, locale="de-DE"):
    text = f"{float(num):,.{int(decimals)}f}"
    if str(locale).lower().startswith(("de", "fr", "es", "it", "nl")):
        text = text.replace(",", "\0").replace(".", ",").replace("\0", ".")
    return text


def escape_html(value):
    return html.escape(str(value), quote=True)


def create_element(tag, attrs=None, content=""):
    attr_str = " ".join(f'{key}="{escape_html(value)}"' for key, value in (attrs or {}).items())
    open_tag = f"<{tag} {attr_str}>" if attr_str else f"<{tag}>"
    return f"{open_tag}{content or ''}</{tag}>"


def create_svg(width, height, content=""):
    return (
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">{content}</svg>'
    )


def hex_to_rgb(value):
    value = str(value).lstrip("#")
    if len(value) != 6:
        return None
    try:
        return {"r": int(value[0:2], 16), "g": int(value[2:4], 16), "b": int(value[4:6], 16)}
    except ValueError:
        return None


def rgb_to_hex(r, g, b):
    return "#" + "".join(f"{max(0, min(255, int(c))):02x}" for c in (r, g, b))


def random_between(low=0, high=1):
    return _random.uniform(low, high)


def random_int(low, high):
    return _random.randint(int(low), int(high))


def number_range(start, end, step=1):
    return list(range(int(start), int(end), int(step) or 1))


def now():
    return datetime.now()


HELPERS = {
    "format_date": format_date,
    "format_number": format_number,
    "escape_html": escape_html,
    "create_element": create_element,
    "create_svg": create_svg,
    "hex_to_rgb": hex_to_rgb,
    "rgb_to_hex": rgb_to_hex,
    "random_between": random_between,
    "random_int": random_int,
    "number_range": number_range,
    "now": now,
}


# -----------------------------------------------------------------------------
# Restricted execution
# -----------------------------------------------------------------------------

def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name.split(".")[0] not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed in widgets")
    return builtins.__import__(name, globals, locals, fromlist, level)


def _sandbox_print(*args, **kwargs):
    kwargs["file"] = sys.stderr
    print(*args, **kwargs)


def build_namespace():
    safe_builtins = {name: getattr(builtins, name) for name in _SAFE_BUILTIN_NAMES if hasattr(builtins, name)}
    safe_builtins["__import__"] = _restricted_import
    safe_builtins["print"] = _sandbox_print
    namespace = {"__builtins__": safe_builtins, "__name__": "widget"}
    namespace.update(HELPERS)
    return namespace


def apply_resource_limits(mem_limit_mb, cpu_seconds):
    try:
        import resource
    except ImportError:  # Not available on Windows; the wall-clock timeout still applies
        return
    if mem_limit_mb > 0:
        limit = mem_limit_mb * 1024 * 1024
        resource.setrlimit(resource.RLIMIT_AS, (limit, limit))
    if cpu_seconds > 0:
        resource.setrlimit(resource.RLIMIT_CPU, (cpu_seconds, cpu_seconds + 1))


def run(code, params):
    namespace = build_namespace()
    exec(compile(code, "<widget>", "exec"), namespace)
    render = namespace.get("render")
    if not callable(render):
        return {"status": "error", "message": "render() function not found"}
    output = render(params)
    return {"status": "success", "output": output}


def main():
    try:
        with open(os.environ["WIDGET_CODE_PATH"], encoding="utf-8") as f:
            code = f.read()
        params = json.loads(os.environ.get("WIDGET_PARAMETERS", "{}"))
        apply_resource_limits(
            int(os.environ.get("WIDGET_MEM_LIMIT_MB", "0")),
            int(os.environ.get("WIDGET_CPU_SECONDS", "0")),
        )
        payload = run(code, params)
        line = json.dumps(payload, default=str)
    except MemoryError:
        line = json.dumps({"status": "error", "message": "Memory limit exceeded"})
    except Exception as e:
        line = json.dumps({"status": "error", "message": f"Execution error: {e.__class__.__name__}: {e}"})
    sys.stdout.write(line + "\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()
