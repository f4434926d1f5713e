from .estimators.panelmatch import PanelMatch
from .config_models import PanelMatchConfig
from .utils.datautils import UnitIndexMap
from .utils.resultutils import MatchedSet, MatchedSetCollection, PanelMatchResults

# Define __all__ to specify the public API of the panelmatch package
__all__ = [
    "PanelMatch",
    "PanelMatchConfig",
    "PanelMatchResults",
    "MatchedSet",
    "MatchedSetCollection",
    "UnitIndexMap",
]
