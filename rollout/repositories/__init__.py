from .rollout_log_repository import RolloutLogRepository
from .template_repository import TemplateRepository

__all__ = [
    'RolloutLogRepository',
    'TemplateRepository'
]
