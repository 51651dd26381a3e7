"""
Copyright 2025 The MontePi Authors.
Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at
    http://www.apache.org/licenses/LICENSE-2.0
Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

"""
Monte Carlo estimation of PI.

Random points are dropped on a square grid with a circle centred on it. The
share of points inside the circle estimates the circle's area, and the area
together with the known diameter gives back PI.
"""

from typing import Optional

import numpy as np

from .types import Configuration


class Sampler:
    """Produces one PI estimate per call from a fresh batch of points."""

    def __init__(self, config: Configuration, rng: Optional[np.random.Generator] = None):
        """
        Args:
            config: Grid, circle and batch settings.
            rng: Source of randomness; a freshly seeded generator by default.
        """
        self.config = config
        self._rng = rng if rng is not None else np.random.default_rng()

    @property
    def radius(self) -> float:
        return self.config.circle_diameter * 0.5

    @property
    def centre(self) -> float:
        return self.config.grid_size * 0.5

    def estimate(self) -> float:
        """Estimate PI from one batch of random points."""
        points = self.generate_points()
        percentage = self.in_circle_percentage(points)
        area = self.estimate_circle_area(percentage)
        return self.estimate_pi_from_area(area)

    def generate_points(self) -> np.ndarray:
        """
        Draw random points on the grid.

        Returns:
            An (n, 2) array of integer x, y coordinates in [0, grid_size)
        """
        n = self.config.points_per_iteration
        return self._rng.integers(0, self.config.grid_size, size=(n, 2))

    def in_circle_percentage(self, points: np.ndarray) -> float:
        """
        Percentage of points on or inside the circle.

        Args:
            points: (n, 2) array of coordinates

        Returns:
            Percentage in [0, 100]
        """
        points = np.asarray(points, dtype=np.float64)
        dist = np.hypot(points[:, 0] - self.centre, points[:, 1] - self.centre)
        count = int(np.count_nonzero(dist <= self.radius))
        return count / len(points) * 100

    def estimate_circle_area(self, percentage: float) -> float:
        """Area of the circle implied by the share of points inside it."""
        return percentage / 100 * self.config.grid_size * self.config.grid_size

    def estimate_pi_from_area(self, area: float) -> float:
        """Work back from the estimated area and the known radius to PI."""
        return float(area / self.radius ** 2)
