"""Real-time push: Change Broadcaster subscriptions, SSE framing and the Redis relay."""
