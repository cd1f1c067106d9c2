"""Infrastructure layer - storage, LLM and messaging adapters"""
