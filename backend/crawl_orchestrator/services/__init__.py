"""Services layer - crawl orchestration logic.

Services sit between the API and the repositories. They hold the
dispatch, status resolution and scheduling rules.
"""
