"""
Provides an iterator for generating unique random minimal samples for RANSAC.

RANSAC (Random Sample Consensus) draws minimal subsets of the candidate correspondences, fits a model to each
subset and keeps the model with the largest support.  Drawing the same subset twice wastes a trial, so
:class:`RandomCombinations` never repeats a combination and falls back to a shuffled exhaustive enumeration when
more combinations are requested than exist.
"""

from typing import Union, Iterator, Any

from itertools import combinations

import numpy as np

from scipy.special import comb

from siftmatch._typing import BasicSequenceProtocol


class RandomCombinations:
    """
    Iterate over at most `number_of_combos` unique random combinations of `combo_length` from `population`.

    The population that combinations are coming from can either be provided directly, or an integer can be provided
    to create a range based population.  The iteration can be stopped at any time, which is what the adaptive
    RANSAC loop does once its trial budget is used up.

    For example:

        >>> from siftmatch.utilities.random_combination import RandomCombinations
        >>> samples = list(RandomCombinations(100, 4, 50, rng=np.random.default_rng(0)))
        >>> len(set(samples))
        50
        >>> # returns an exhaustive set, in random order, if there are more combos requested than can be made uniquely
        >>> sorted(RandomCombinations(3, 2, 10))
        [(0, 1), (0, 2), (1, 2)]
    """

    population: BasicSequenceProtocol

    def __init__(self, population: Union[int, BasicSequenceProtocol], combo_length: int, number_of_combos: int,
                 rng: np.random.Generator | None = None):
        """
        :param population: The population to choose from.  If specified as an integer then the population will be
                           range(int).
        :param combo_length: The length for each combination as an integer
        :param number_of_combos: the maximum number of unique combinations to produce
        :param rng: the random generator to draw from.  A fresh unseeded generator is used if None.
        """

        if isinstance(population, int):
            self.n_population = population
            self.population = range(population)
        else:
            self.n_population = len(population)
            self.population = population

        self.combo_length = combo_length

        self.possible_combos = int(comb(self.n_population, self.combo_length, exact=True))

        self.number_of_combos = number_of_combos

        self.rng = rng if rng is not None else np.random.default_rng()

    @property
    def exhaustive(self) -> bool:
        """
        Whether iteration enumerates every possible combination.
        """
        return self.number_of_combos >= self.possible_combos

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        """
        Generate random combinations.

        :return: An iterator of tuples, where each tuple is a combination of elements from the population.
        """

        if self.exhaustive:
            # random order, the caller may stop before the end
            all_combos = list(combinations(self.population, self.combo_length))
            for ind in self.rng.permutation(self.possible_combos):
                yield all_combos[ind]
            return

        used_samples = set()
        for _ in range(self.number_of_combos):
            new_sample = self._draw()
            while new_sample in used_samples:
                new_sample = self._draw()

            used_samples.add(new_sample)

            yield tuple(self.population[ind] for ind in new_sample)

    def _draw(self) -> tuple[int, ...]:
        return tuple(sorted(int(ind) for ind in self.rng.choice(self.n_population, self.combo_length,
                                                                   replace=False)))
