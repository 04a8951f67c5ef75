# Window tally engine and the chain reader capability it consumes

from .chain import BlockVersionFetcher, ChainReader, TransportError
from .tally import FetchError, InvariantViolation, VersionHistogram, WindowState, WindowTallyEngine

__all__ = [
    # Chain reader capability
    'BlockVersionFetcher',
    'ChainReader',
    'TransportError',
    # Tally engine
    'FetchError',
    'InvariantViolation',
    'VersionHistogram',
    'WindowState',
    'WindowTallyEngine',
]
