"""Demonstration contestants for first-time setup."""

DEFAULT_CONTESTANTS = [
    {
        "name": "Michael Chen",
        "bio": "Talented dancer specializing in contemporary and hip-hop styles. Winner of multiple dance competitions.",
        "image_url": "https://images.unsplash.com/photo-1507003211169-0a1dd7228f2d?w=400&h=400&fit=crop&crop=face",
        "age": 22,
        "location": "Port Harcourt, Nigeria",
        "category": "Dance",
    },
    {
        "name": "Aisha Okechukwu",
        "bio": "Creative fashion designer with a unique Afrocentric style. Her designs celebrate African culture and modern trends.",
        "image_url": "https://images.unsplash.com/photo-1438761681033-6461ffad8d80?w=400&h=400&fit=crop&crop=face",
        "age": 26,
        "location": "Abuja, Nigeria",
        "category": "Fashion Design",
    },
    {
        "name": "David Williams",
        "bio": "Skilled photographer capturing life's beautiful moments. Specializes in portrait and event photography.",
        "image_url": "https://images.unsplash.com/photo-1472099645785-5658abf4ff4e?w=400&h=400&fit=crop&crop=face",
        "age": 28,
        "location": "Kano, Nigeria",
        "category": "Photography",
    },
    {
        "name": "Fatima Hassan",
        "image_url": "https://images.unsplash.com/photo-1544005313-94ddf0286df2?w=400&h=400&fit=crop&crop=face",
        "age": 25,
        "location": "Ibadan, Nigeria",
        "category": "Culinary Arts",
    },
    {
        "name": "James Okafor",
        "bio": "Versatile actor with experience in theater, film, and television. Known for his emotional depth and versatility.",
        "image_url": "https://images.unsplash.com/photo-1500648767791-00dcc994a43e?w=400&h=400&fit=crop&crop=face",
        "age": 30,
        "location": "Enugu, Nigeria",
        "category": "Acting",
    },
]

CONTESTANT_FIELDS = ("name", "bio", "category", "location", "age", "image_url")


def normalize_seed_record(record: dict) -> dict:
    """Keep the display fields of a seed record; accepts imageUrl as an alias."""
    data = dict(record)
    if "imageUrl" in data and "image_url" not in data:
        data["image_url"] = data.pop("imageUrl")
    if not data.get("name"):
        raise ValueError(f"Seed record has no name: {record!r}")
    return {k: v for k, v in data.items() if k in CONTESTANT_FIELDS}
