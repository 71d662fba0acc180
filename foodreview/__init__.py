"""FoodReview: reviews and photos stored in a GitHub repository."""

__version__ = "0.1.0"
