"""Image Engine - decoding, caching and scheduling behind the viewer.

This package provides:
- Codec dispatch and normalization to RGBA (decoder)
- Background decoding with supersession (loader)
- Bounded decoded-image cache (frame_cache)
- Animation frame selection (animation)
- The coordinator the shell talks to (engine)

Usage:
    from image_pipeline.image_engine.engine import PipelineEngine

    engine = PipelineEngine()
    engine.display_ready.connect(on_display_ready)
    engine.result_ready.connect(engine.poll)
    engine.open_path("/path/to/image.png")

Keep this module lightweight: the engine pulls in PySide6, so it is not
imported here.
"""
