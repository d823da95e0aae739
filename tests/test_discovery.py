from preik.services.discovery import filter_urls


def test_filter_keeps_same_host_pages_in_order():
    urls = [
        "https://shop.no/",
        "https://shop.no/produkter",
        "https://other.no/produkter",
        "https://cdn.shop.no/bilde",
        "https://shop.no/om-oss",
    ]
    assert filter_urls(urls, "https://shop.no") == [
        "https://shop.no/",
        "https://shop.no/produkter",
        "https://shop.no/om-oss",
    ]


def test_filter_drops_assets_and_admin_paths():
    urls = [
        "https://shop.no/katalog.PDF",
        "https://shop.no/bilde.webp",
        "https://shop.no/app.js",
        "https://shop.no/wp-admin/options.php",
        "https://shop.no/wp-login.php",
        "https://shop.no/cdn-cgi/l/email-protection",
        "https://shop.no/kontakt",
    ]
    assert filter_urls(urls, "https://shop.no") == ["https://shop.no/kontakt"]


def test_filter_deduplicates_on_path_without_trailing_slash_or_query():
    urls = [
        "https://shop.no/voks/",
        "https://shop.no/voks",
        "https://shop.no/voks?side=2",
        "https://shop.no/polish",
    ]
    assert filter_urls(urls, "https://shop.no/") == ["https://shop.no/voks/", "https://shop.no/polish"]


def test_filter_drops_non_https_and_invalid_urls():
    urls = ["http://shop.no/a", "https://[shop.no/b", "mailto:post@shop.no", "https://shop.no/c"]
    assert filter_urls(urls, "https://shop.no") == ["https://shop.no/c"]


def test_dedup_key_is_origin_based():
    urls = [
        "https://shop.no/a",
        "https://shop.no:443/a",
        "https://kunde@shop.no/a/",
        "https://SHOP.no/a",
        "https://shop.no:8443/a",
        "https://shop.no:99999/a",
    ]
    assert filter_urls(urls, "https://shop.no") == ["https://shop.no/a", "https://shop.no:8443/a"]
