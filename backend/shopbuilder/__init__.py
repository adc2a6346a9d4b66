"""AI app builder backend: LLM code generation, sandbox previews and Shopify CLI jobs."""
