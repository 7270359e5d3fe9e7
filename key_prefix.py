"""
Renders the --prefix template against the instance tags.

The template language is the small subset of Go text/template that makes sense
for a tag map:

    {{.Environment}}/{{.Role}}           tag lookup by name
    {{index . "aws:autoscaling:groupName"}}
                                         tag lookup for names that are not
                                         identifiers
    {{/* comment */}}                    ignored
    {{- .Role -}}                        trim whitespace around the action

Referencing a tag the instance does not have is an error, as is any other
action.
"""
import json
import re

from confit_errors import TemplateError

SEPARATOR = "/"

_ACTION = re.compile(r"\{\{(-\s)?(.*?)(\s-)?\}\}", re.DOTALL)
_FIELD = re.compile(r"^\.([A-Za-z_][A-Za-z0-9_]*)$")
_INDEX = re.compile(r'^index\s+\.\s+("(?:[^"\\]|\\.)*"|`[^`]*`)$', re.DOTALL)


def _literal(quoted):
    if quoted.startswith("`"):
        return quoted[1:-1]
    try:
        return json.loads(quoted)
    except ValueError as e:
        raise TemplateError("bad string literal %s in prefix template"
                            % quoted) from e


def _lookup(action, tags):
    m = _FIELD.match(action)
    if m:
        name = m.group(1)
    else:
        m = _INDEX.match(action)
        if not m:
            raise TemplateError("unsupported action {{%s}} in prefix template"
                                % action)
        name = _literal(m.group(1))
    try:
        return tags[name]
    except KeyError:
        raise TemplateError("prefix template references missing tag %r"
                            % name) from None


def render_template(template, tags):
    out = []
    pos = 0
    trim_next = False
    for m in _ACTION.finditer(template):
        text = template[pos:m.start()]
        if trim_next:
            text = text.lstrip()
        if m.group(1):
            text = text.rstrip()
        out.append(text)
        trim_next = bool(m.group(3))
        pos = m.end()

        action = m.group(2).strip()
        if action.startswith("/*") and action.endswith("*/"):
            continue
        if not action:
            raise TemplateError("empty action in prefix template")
        out.append(_lookup(action, tags))

    rest = template[pos:]
    if "{{" in rest:
        raise TemplateError("unclosed action in prefix template %r" % template)
    if trim_next:
        rest = rest.lstrip()
    out.append(rest)
    return "".join(out)


def render(template, tags):
    """
    Render template and make sure the result ends with exactly the separator
    the listing and the key-to-path mapping rely on.
    """
    prefix = render_template(template, tags)
    if not prefix.endswith(SEPARATOR):
        prefix += SEPARATOR
    return prefix
