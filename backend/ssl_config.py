import os
import logging

logger = logging.getLogger(__name__)

# SSL Configuration
SSL_CERT = os.getenv('SSL_CERT', 'certs/cert.pem')
SSL_KEY = os.getenv('SSL_KEY', 'certs/key.pem')


def get_uvicorn_ssl_config(cert: str = None, key: str = None):
    """Return SSL keyword arguments for uvicorn, or nothing when the certificate pair is missing."""
    cert = cert or SSL_CERT
    key = key or SSL_KEY
    if os.path.exists(cert) and os.path.exists(key):
        return {
            "ssl_keyfile": key,
            "ssl_certfile": cert
        }
    logger.info(f"No certificate at {cert}, serving plain HTTP")
    return {}
