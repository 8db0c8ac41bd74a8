"""
AI gateway services package.

Orchestration layer between callers and external model providers:

- Provider routing and fallback
- Admission control (rate limiting)
- Semantic response caching
- Cost optimization and budget alerts
- Error classification, retries and circuit breaking
"""
