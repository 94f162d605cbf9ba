class WeightConverter:
    """Utility for converting between kg and lb.

    Kilograms are the canonical storage unit; pounds only exist for display
    and user input.
    """

    KG_TO_LB = 2.20462

    @staticmethod
    def kg_to_lb(kg: float) -> float:
        return round(kg * WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def lb_to_kg(lb: float) -> float:
        return round(lb / WeightConverter.KG_TO_LB, 2)

    @staticmethod
    def to_storage_unit(weight: float | None, use_metric: bool) -> float:
        """Return ``weight`` entered in the user's unit as kilograms."""
        if not weight:
            return 0.0
        return float(weight) if use_metric else WeightConverter.lb_to_kg(float(weight))

    @staticmethod
    def from_storage_unit(weight: float | None, use_metric: bool) -> float:
        """Return stored kilograms in the user's display unit."""
        if not weight:
            return 0.0
        return float(weight) if use_metric else WeightConverter.kg_to_lb(float(weight))

    @staticmethod
    def volume(weight: float, reps: int, use_metric: bool) -> float:
        volume_kg = float(weight) * int(reps)
        return volume_kg if use_metric else WeightConverter.kg_to_lb(volume_kg)

    @staticmethod
    def format_weight(weight: float, use_metric: bool) -> str:
        if use_metric:
            return f"{float(weight):.1f} kg"
        return f"{WeightConverter.kg_to_lb(float(weight)):.1f} lbs"

    @staticmethod
    def display_weight(
        weight: float | str | None,
        use_metric: bool,
        include_unit: bool = True,
        precision: int = 1,
    ) -> str:
        """Format stored kilograms for display, ``-`` when nothing was lifted."""
        try:
            value = float(weight)
        except (TypeError, ValueError):
            return "-"
        if value != value or value == 0:
            return "-"
        converted = value if use_metric else value * WeightConverter.KG_TO_LB
        text = f"{round(converted, precision):.{precision}f}".rstrip("0").rstrip(".")
        if not include_unit:
            return text
        return f"{text} {'kg' if use_metric else 'lbs'}"
