import logging

logger = logging.getLogger("servicecenter_client")
