"""
Application services for the board.

Presentation code should call the board facade (`modules.pipeline.board`)
rather than the gateway or the store directly.
"""
