"""
Message templates.

  - defaults:  built-in template set used as fallback
  - registry:  TemplateStore (store rows first, defaults second)
  - render:    {{placeholder}} interpolation
  - variables: placeholder values for a lead/opportunity
"""
from templates.defaults import DEFAULT_TEMPLATES
from templates.registry import TemplateStore
from templates.render import interpolate
from templates.variables import VariableContext, resolve_variables, merge_variables

__all__ = [
    "DEFAULT_TEMPLATES", "TemplateStore", "interpolate",
    "VariableContext", "resolve_variables", "merge_variables",
]
