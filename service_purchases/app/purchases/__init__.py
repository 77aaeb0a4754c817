"""
Purchase flows: single and bulk engines plus post-commit side effects.
"""
