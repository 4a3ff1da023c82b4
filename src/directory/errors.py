"""Directory-level errors shared by the claim flow and the registry."""


class DirectoryError(RuntimeError):
    """Base directory error."""


class PlaceNotFoundError(DirectoryError):
    """Raised when a place id does not exist."""

    def __init__(self, place_id: int) -> None:
        super().__init__(f"Place {place_id} not found")
        self.place_id = place_id


class PlaceAlreadyOwnedError(DirectoryError):
    """Raised when a place already has an owning business."""

    def __init__(self, place_id: int, business_id: int | None = None) -> None:
        super().__init__(f"Place {place_id} is already owned by a business")
        self.place_id = place_id
        self.business_id = business_id
