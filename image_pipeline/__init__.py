"""Image pipeline: decode, cache, edit and animate images for a viewer shell.

The viewer-facing entry point is
`image_pipeline.image_engine.engine.PipelineEngine`.
"""

__version__ = "0.1.0"
