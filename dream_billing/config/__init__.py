from dream_billing.config.config import Config

__all__ = ["Config"]
