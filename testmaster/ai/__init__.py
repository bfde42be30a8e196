"""
TestMaster AI
AI module — generation pipeline and human review.

Submodules:
    - prompt_registry: template engine and built-in / YAML prompt templates
    - model_registry: model descriptors, task defaults, persisted configuration
    - gateway: completion providers (Gemini, OpenAI, Anthropic, local stub)
    - executor: resolve model + template, render, call, parse JSON
    - records: per-kind normalization and persistence of generated content
    - generation: single-item generation
    - batch: document decomposition into pending items
    - review: review sessions and the item state machine
"""
