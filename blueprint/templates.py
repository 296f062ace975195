# blueprint/templates.py
"""
Logic-less template engine and the document templates of an export bundle.

Syntax:
  {{name}}            scalar (dotted lookup allowed: {{module.title}})
  {{.}}               current item inside a section
  {{#name}}...{{/name}}  repeated over a list, or rendered once when truthy
  {{^name}}...{{/name}}  rendered when the value is missing, false or empty

A section tag alone on its line consumes that whole line, so block templates
render without stray blank lines.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Union


class TemplateError(ValueError):
    pass


_TAG = re.compile(r"\{\{\s*([#^/]?)\s*([\w.\-]+|\.)\s*\}\}")


@dataclass
class Text:
    value: str


@dataclass
class Var:
    name: str


@dataclass
class Section:
    name: str
    inverted: bool = False
    children: List["Node"] = field(default_factory=list)


Node = Union[Text, Var, Section]


def _tokens(template: str):
    pos = 0
    for m in _TAG.finditer(template):
        start, end = m.start(), m.end()
        sigil, name = m.group(1), m.group(2)
        if sigil:
            line_start = template.rfind("\n", 0, start) + 1
            nl = template.find("\n", end)
            line_end = len(template) if nl == -1 else nl + 1
            if (line_start >= pos and not template[line_start:start].strip()
                    and not template[end:line_end].strip()):
                start, end = line_start, line_end
        if start > pos:
            yield "text", template[pos:start]
        yield sigil or "var", name
        pos = end
    if pos < len(template):
        yield "text", template[pos:]


def parse(template: str) -> List[Node]:
    root: List[Node] = []
    stack: List[Section] = []
    current = root
    for kind, value in _tokens(template):
        if kind == "text":
            current.append(Text(value))
        elif kind == "var":
            current.append(Var(value))
        elif kind in ("#", "^"):
            section = Section(value, inverted=(kind == "^"))
            current.append(section)
            stack.append(section)
            current = section.children
        else:
            if not stack or stack[-1].name != value:
                opened = stack[-1].name if stack else None
                raise TemplateError(f"closing tag {{{{/{value}}}}} does not match {opened!r}")
            stack.pop()
            current = stack[-1].children if stack else root
    if stack:
        raise TemplateError(f"unclosed section {stack[-1].name!r}")
    return root


def _lookup(name: str, stack: List[Any]) -> Any:
    if name == ".":
        return stack[-1]
    head, *rest = name.split(".")
    for ctx in reversed(stack):
        if isinstance(ctx, Mapping) and head in ctx:
            value = ctx[head]
            for part in rest:
                value = value.get(part) if isinstance(value, Mapping) else None
            return value
    return None


def _scalar(value: Any) -> str:
    if value is None or value is False:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_scalar(v) for v in value)
    return str(value)


def _render(nodes: List[Node], stack: List[Any], out: List[str]) -> None:
    for node in nodes:
        if isinstance(node, Text):
            out.append(node.value)
        elif isinstance(node, Var):
            out.append(_scalar(_lookup(node.name, stack)))
        else:
            value = _lookup(node.name, stack)
            empty = not value
            if node.inverted:
                if empty:
                    _render(node.children, stack, out)
            elif isinstance(value, (list, tuple)):
                for item in value:
                    _render(node.children, stack + [item], out)
            elif not empty:
                _render(node.children, stack + [value] if value is not True else stack, out)


def render(template: Union[str, List[Node]], context: Dict[str, Any]) -> str:
    nodes = parse(template) if isinstance(template, str) else template
    out: List[str] = []
    _render(nodes, [context], out)
    return "".join(out)


# ---------------------------------------------------------------------------
# Document templates
# ---------------------------------------------------------------------------
BUILD_INSTRUCTIONS_TEMPLATE = """# BUILD_INSTRUCTIONS.md

Guidance for an AI coding assistant working on this repository.

## Project Overview

{{name}} - {{summary}}

**Generated**: {{generated_at}}
**Version**: {{version}}

## Core Architecture

The system is organized into **{{module_count}} modules**, each documented in
files under {{max_file_kb}}KB.

### Module Structure
```
{{module_tree}}
```

### Data Flow
```
{{data_flow}}
```

## Critical Constraints

{{#constraints}}
- {{.}}
{{/constraints}}

## Integration Servers

{{#servers}}
- **{{name}}**: {{purpose}}
{{/servers}}
{{^servers}}
- None required
{{/servers}}

## Module Dependencies

```
{{dependency_graph}}
```

## Implementation Order

{{#implementation_order}}
{{order}}. {{name}} - {{reason}}
{{/implementation_order}}

## Assistant Notes

{{ai_content}}
"""

README_TEMPLATE = """# {{name}}

> {{summary}}

{{ai_content}}

## Tech Stack

| Category | Technology |
|----------|------------|
{{#tech_stack}}
| {{category}} | {{technology}} |
{{/tech_stack}}

## Project Structure

```
{{module_tree}}
```

## Modules

{{#modules}}
- [{{title}}](modules/{{name}}/README.md) - {{description}}
{{/modules}}

## Environment Variables

| Variable | Description | Required |
|----------|-------------|----------|
{{#env_vars}}
| `{{name}}` | {{description}} | {{required}} |
{{/env_vars}}

## Getting Started

```bash
cd {{slug}}
npm install
cp .env.example .env.local
npm run dev
```
"""

PLAN_TEMPLATE = """# Implementation Plan: {{name}}

**Version**: {{version}}

{{ai_content}}
"""

MODULE_README_TEMPLATE = """# {{title}} Module

## Purpose

{{description}}

## Features

{{#features}}
- {{.}}
{{/features}}

## Dependencies

{{#dependencies}}
- {{.}}
{{/dependencies}}
{{^dependencies}}
- None
{{/dependencies}}

## Integration Servers

{{#servers}}
- **{{.}}**
{{/servers}}
{{^servers}}
- None required
{{/servers}}

## Constraints

{{#constraints}}
- **Must** {{.}}
{{/constraints}}

## File Structure

```
{{file_structure}}
```

## Related Answers

{{#answers}}
### {{question}}

{{answer}}

{{/answers}}
{{^answers}}
No questionnaire answers map to this module.
{{/answers}}
{{#stub_note}}

> {{stub_note}}
{{/stub_note}}
"""

PROMPT_TEMPLATE = """# {{title}}

## Description
{{description}}

## Context
{{context}}

## Integration Servers Required
{{#servers}}
- {{.}}
{{/servers}}
{{^servers}}
- None
{{/servers}}

## Model Recommendation
Use **{{model}}** for this prompt.

## Dependencies
{{#dependencies}}
- {{.}}
{{/dependencies}}
{{^dependencies}}
- None, this prompt can run first.
{{/dependencies}}

---

## Prompt

```
{{prompt}}
```

---

## Expected Output
{{expected_output}}

## Success Criteria
{{#success_criteria}}
- [ ] {{.}}
{{/success_criteria}}

## Common Issues & Solutions

{{#common_issues}}
### Issue: {{issue}}
**Solution**: {{solution}}

{{/common_issues}}
---

*Category: {{category}}*
"""

SETUP_GUIDE_TEMPLATE = """# Setup Guide

This guide walks through setting up {{name}} from scratch.

## Prerequisites

{{#prerequisites}}
- {{name}} ({{version}})
{{/prerequisites}}

## Steps

{{#steps}}
### Step {{number}}: {{title}}

{{description}}

```bash
{{#commands}}
{{.}}
{{/commands}}
```

{{/steps}}
## Environment

Copy `.env.example` to `.env.local` and fill in:

{{#env_vars}}
- `{{name}}`: {{description}}
{{/env_vars}}

## Next Steps

Begin implementing modules with the prompts in `prompts/`, following the
order in BUILD_INSTRUCTIONS.md.
"""

ARCHITECTURE_GUIDE_TEMPLATE = """# Architecture

## System Overview

{{name}}: {{summary}}

## High-Level Architecture

```
{{data_flow}}
```

## Modules

{{#modules}}
### {{title}}

{{description}}

{{#dependencies}}
- depends on `{{.}}`
{{/dependencies}}

{{/modules}}
## Dependency Graph

```
{{dependency_graph}}
```

## Technology

| Category | Technology |
|----------|------------|
{{#tech_stack}}
| {{category}} | {{technology}} |
{{/tech_stack}}
"""

DEPLOYMENT_GUIDE_TEMPLATE = """# Deployment Guide

## Checklist

{{#checklist}}
- [ ] {{.}}
{{/checklist}}

## Environment Variables

{{#env_vars}}
- `{{name}}` ({{required}}): {{description}}
{{/env_vars}}

## Release

```bash
npm run build
npm start
```

Version {{version}} of this bundle was generated on {{generated_at}}.
"""

ENV_EXAMPLE_TEMPLATE = """# Environment for {{name}}
{{#env_vars}}
# {{description}}
{{name}}=
{{/env_vars}}
"""

MODULE_IMPLEMENTATION_TEMPLATE = """# {{title}} Implementation

## Purpose

{{description}}

## Constraints

{{#constraints}}
- **Must** {{.}}
{{/constraints}}

## State / Flow

```
Input -> Validation -> Processing -> Output
```

## Requirements From The Questionnaire

{{#answers}}
### Phase {{phase}}: {{question}}

{{answer}}

{{/answers}}
{{^answers}}
No questionnaire answers map to this module; follow the constraints above.

{{/answers}}
## Features

{{#features}}
### {{.}}

{{/features}}
## Testing Requirements

- Unit tests for every exported function
- Integration tests for each endpoint the module exposes
- End-to-end tests for the flows that cross module boundaries

## Security Considerations

- Validate and sanitize all input
- Check authorization on every data access
- Keep secrets in environment variables
"""
