from .consent import consent_bp
from .convert import convert_bp

__all__ = ['consent_bp', 'convert_bp']
