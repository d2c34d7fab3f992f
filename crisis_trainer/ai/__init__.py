"""
Crisis Trainer
AI module.

Submodules:
    - gateway: LLM Gateway (provider routing, retrieval fallback, retries)
    - prompt_registry: built-in templates with YAML overrides
    - output_parser: evaluator markdown and JSON output parsing
    - task_runner: fire-and-forget background tasks
"""
