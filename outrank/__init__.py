"""
outrank: AI visibility scanning.

Responsible for:
- Crawling a business website and summarizing what it does.
- Researching the search queries real customers would ask an AI assistant.
- Asking several AI platforms those queries and scoring the mentions.
- Dispatching weekly scans per subscription at the subscriber's local time.

Prefect-free on purpose; the Prefect wrappers live in flows/.
"""
