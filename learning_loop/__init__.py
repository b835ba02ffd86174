"""
Learning loop package initialization.

Logging is configured by `build_learning_loop`, not on import.
"""
