"""
Workflows Package — Trading workflows live here.

Each subdirectory is a self-contained workflow built on the ``rpoly``
platform layer.

Convention:
  workflows/
    my_workflow/
      __init__.py      # Public API of the workflow
      models.py        # Pydantic models
      params.py        # Tunable parameter sets
      tests/           # Workflow-local test suite
"""
