# tendermint_sim/rng.py
"""
Injectable randomness for the simulator.

Every random draw the engine makes (vote outcomes, downtime, malicious content,
partition sampling, packet loss, block hashes) goes through a RandomSource so
that scenarios can be replayed from a seed or scripted in tests.
"""

import random
from typing import Iterable, List, Optional, Sequence, TypeVar

T = TypeVar("T")


class RandomSource:
    """Seedable random source backed by random.Random"""

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self._random = random.Random(seed)

    def random(self) -> float:
        """Uniform float in [0, 1)"""
        return self._random.random()

    def randint(self, low: int, high: int) -> int:
        """Uniform integer in [low, high]"""
        return self._random.randint(low, high)

    def uniform(self, low: float, high: float) -> float:
        return self._random.uniform(low, high)

    def sample(self, population: Sequence[T], k: int) -> List[T]:
        """k distinct elements, without replacement"""
        return self._random.sample(list(population), k)

    def shuffle(self, items: List[T]) -> List[T]:
        """Return a shuffled copy of items"""
        shuffled = list(items)
        self._random.shuffle(shuffled)
        return shuffled

    def token(self, bits: int = 64) -> str:
        """Random hex token, used as a nonce for block hashes"""
        return format(self._random.getrandbits(bits), "x")


class ScriptedRandom(RandomSource):
    """
    Random source that replays a fixed sequence of floats.

    random() returns the scripted values in order and falls back to the seeded
    generator once the script is exhausted. randint/uniform are derived from the
    same scripted floats so a test controls every draw it cares about.
    """

    def __init__(self, values: Iterable[float], seed: Optional[int] = 0):
        super().__init__(seed)
        self._values = list(values)
        self.draws = 0

    def random(self) -> float:
        self.draws += 1
        if self._values:
            return self._values.pop(0)
        return super().random()

    def randint(self, low: int, high: int) -> int:
        return low + min(int(self.random() * (high - low + 1)), high - low)

    def uniform(self, low: float, high: float) -> float:
        return low + (high - low) * self.random()

    @property
    def remaining(self) -> int:
        return len(self._values)
