"""
Gunicorn config. Loads the static city catalog in each worker process
(post_fork) so the first neighborhood search does not pay the JSON parse.
"""

import logging


def post_fork(server, worker):
    """Warm the city catalog in this gunicorn worker process."""
    try:
        from city_catalog import get_catalog
        count = len(get_catalog().records())
        logging.getLogger("gunicorn.error").info(
            "Worker %s loaded %d catalog cities", worker.pid, count,
        )
    except Exception as e:
        logging.getLogger(__name__).exception("Failed to warm city catalog: %s", e)
