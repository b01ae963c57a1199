from xhs_recipe.recipe import (
    SYSTEM_PROMPT,
    build_system_prompt,
    build_user_prompt,
    extract_first_https_url,
    normalize_markdown_recipe,
)


def test_extract_first_https_url_none_cases():
    assert extract_first_https_url("no url here") is None
    assert extract_first_https_url("http://example.com only") is None
    assert extract_first_https_url("HTTPS://example.com uppercase") is None
    assert extract_first_https_url("https://") is None
    assert extract_first_https_url(None) is None


def test_extract_first_https_url_trims_share_text():
    assert extract_first_https_url("看看这个 https://xhslink.com/abc 复制打开小红书") == "https://xhslink.com/abc"
    assert extract_first_https_url("https://xhslink.com/abc。\n后面") == "https://xhslink.com/abc"
    assert extract_first_https_url("prefix\nhttps://xhslink.com/abc\nsuffix") == "https://xhslink.com/abc"
    assert extract_first_https_url("“https://xhslink.com/abc”") == "https://xhslink.com/abc"
    assert extract_first_https_url('复制: "https://xhslink.com/abc", ok') == "https://xhslink.com/abc"
    assert extract_first_https_url("text https://xhslink.com/abc?x=1&y=2。") == "https://xhslink.com/abc?x=1&y=2"
    assert extract_first_https_url("http://a https://b https://c") == "https://b"
    assert extract_first_https_url("https://xhslink.com/abc)") == "https://xhslink.com/abc"
    assert extract_first_https_url("https://xhslink.com/abc#frag") == "https://xhslink.com/abc#frag"


def test_normalize_keeps_bilingual_output():
    text = "# 番茄炒蛋\n\n## 中文\n步骤\n\n## English\nSteps"
    assert normalize_markdown_recipe(f"  {text}  ") == text + "\n"


def test_normalize_wraps_single_language_output():
    out = normalize_markdown_recipe("just steps")
    assert out.startswith("# Recipe\n\n## 中文\njust steps\n")
    assert "_Assumption: the original output was not in the required bilingual format._" in out
    assert out.endswith("just steps\n")
    assert normalize_markdown_recipe("   ") == ""
    assert normalize_markdown_recipe(None) == ""


def test_prompts_carry_template_and_inputs():
    assert build_system_prompt("en").startswith(SYSTEM_PROMPT)
    assert "English" in build_system_prompt("en").splitlines()[-1]
    assert "Simplified Chinese" in build_system_prompt("unknown")
    user = build_user_prompt("https://x.test/p", "番茄炒蛋")
    assert "Source URL:\nhttps://x.test/p" in user
    assert user.endswith("Caption:\n番茄炒蛋")
