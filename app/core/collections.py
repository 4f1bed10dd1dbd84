class CollectionNames:
    """MongoDB collection names used by the repositories."""

    LINKS = "links"
    LANGUAGES = "languages"
    LICENSES = "licenses"
