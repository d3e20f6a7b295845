from .engines import ENGINE_NAMES, ENGINES, Engine, resolve_engine
from .selectors import FederalSelectors, StateSelectors

__all__ = ["ENGINE_NAMES", "ENGINES", "Engine", "resolve_engine", "FederalSelectors", "StateSelectors"]
