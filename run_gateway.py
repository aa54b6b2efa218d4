#!/usr/bin/env python3
"""
Run the assistant gateway.

Usage:
    python run_gateway.py [--host HOST] [--port PORT] [--reload]
"""

import argparse
import uvicorn

from assistant_gateway.config import get_config


def main():
    """Run the gateway server."""
    config = get_config()

    parser = argparse.ArgumentParser(description="Run the assistant gateway")
    parser.add_argument("--host", default=config.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.port, help="Port to bind to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    limit = config.rate_limit
    print(f"""
Assistant gateway on {args.host}:{args.port} ({config.environment.value})

  POST /api/analyze        page structure analysis
  POST /api/translate      text translation
  POST /api/voice-command  voice command interpretation
  POST /api/form-help      form field guidance
  GET  /metrics            Prometheus exposition
  GET  /health, /ready

  Rate limit: {limit.capacity} token bucket, {limit.refill_per_second}/s refill
  Limiter outage policy: {"fail open" if config.is_production else "fail closed"}
""")

    uvicorn.run(
        "assistant_gateway.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
    )


if __name__ == "__main__":
    main()
