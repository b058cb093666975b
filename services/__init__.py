"""
Kling Generation Gateway Services

- generation: submission pipeline, reconciler and worker
- billing: pricing lookup and funding source selection
- access: model access and concurrency policy
- video_generation: fal.ai queue client, endpoint table, persistence
- storage: input uploads
- api: FastAPI surface
"""
