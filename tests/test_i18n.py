from authkit.service.i18n import DEFAULT_MESSAGES, TranslationCatalog


def test_catalogs_share_keys():
    assert set(DEFAULT_MESSAGES["en"]) == set(DEFAULT_MESSAGES["es"])


def test_resolve_exact_and_base_tags():
    catalog = TranslationCatalog()
    assert catalog.resolve("es") == "es"
    assert catalog.resolve("es-AR") == "es"
    assert catalog.resolve("es_ES") == "es"
    assert catalog.resolve("fr-FR,es;q=0.8") == "es"


def test_resolve_falls_back_to_default():
    catalog = TranslationCatalog()
    assert catalog.resolve(None) == "en"
    assert catalog.resolve("*") == "en"
    assert catalog.resolve("de") == "en"


def test_unknown_default_language_falls_back_to_english():
    assert TranslationCatalog(default_language="xx").default_language == "en"


def test_token_failures_share_one_message():
    translator = TranslationCatalog().translator("en")
    messages = {
        translator.t(key)
        for key in (
            "error.invalid_token",
            "error.token_expired",
            "error.token_revoked",
            "error.unauthorized",
        )
    }
    assert messages == {"authentication failed"}


def test_missing_key_falls_back_to_default_catalog_then_default():
    catalog = TranslationCatalog(
        {"en": {"greeting": "hello"}, "es": {}}, default_language="en"
    )
    translator = catalog.translator("es")
    assert translator.t("greeting") == "hello"
    assert translator.t("missing", "fallback text") == "fallback text"
    assert translator.t("missing") == "missing"
