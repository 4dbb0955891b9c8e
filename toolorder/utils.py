import time
from functools import wraps

from .log_utils import get_logger

# Configuration defaults
EPSILON = 1e-4  # Heights closer than this are merged into one layer
SIMILAR_COLOR_THRESHOLD_DE2000 = 20.0  # Colours below this CIEDE2000 distance match
DEFAULT_GROUP_CAPACITY = 16  # Filaments per extruder when no feed slots are described
MEMORY_THRESHOLD = 0.02  # Keep groups within 2% of the best flush cost
MAX_MEMORY_GROUPS = 64  # Cap on the near-best pool
COST_TIE_TOLERANCE = 1e-6  # Flush costs closer than this count as equal
MAX_ENUM_CANDIDATES = 1 << 14  # Above this the optimizer switches to beam search
BEAM_WIDTH = 64
PARALLEL_MIN_CANDIDATES = 4096  # Use a process pool from this many candidates on
MAX_PERMUTATION_FILAMENTS = 6  # Exhaustive per-layer ordering up to this size

logger = get_logger(__name__)


def timed(func):
    """Decorator to log the execution time of a function."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        t0 = time.perf_counter()
        result = func(*args, **kwargs)
        t1 = time.perf_counter()
        logger.debug(f"[TIMING] {func.__name__:25s}: {t1 - t0:0.3f}s")
        return result

    return wrapper


def sort_remove_duplicates(values):
    """Return the sorted unique items of ``values`` as a list."""
    return sorted(set(values))


def parse_color(color):
    """Parse '#RRGGBB' or '#RRGGBBAA' into an (r, g, b) tuple."""
    color = color.strip()
    if not color.startswith('#') or len(color) not in (7, 9):
        raise ValueError(f"Invalid colour string {color!r}")
    return tuple(int(color[i:i + 2], 16) for i in (1, 3, 5))
