"""SSS: a small typed language for launching programs and composing their output streams."""
