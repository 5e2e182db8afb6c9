"""
Tool definitions for the three pipelines that share the dispatcher:
marketplace metadata generation, image-to-prompt and file review.

Each tool builds the chat messages for one item, parses the model reply into
a ResultPayload and states what one item costs.
"""
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from .errors import InferenceError, ValidationError
from .models import ResultPayload, Variant, Verdict

logger = logging.getLogger(__name__)

MARKETPLACES = ("Adobe Stock", "Shutterstock", "Freepik")

MARKETPLACE_GUIDELINES = {
    "Adobe Stock": {
        'title': "Professional and editorial. Clear subject first, licensing friendly.",
        'keywords': "Premium licensing terms, photographic technique, professional and editorial concepts.",
        'description': "Concise commercial description of subject, setting and use cases.",
    },
    "Shutterstock": {
        'title': "Search optimized and descriptive. Front-load the strongest keywords.",
        'keywords': "High-volume search terms, popular variations, broad commercial appeal.",
        'description': "Keyword-rich sentence covering subject, action and context.",
    },
    "Freepik": {
        'title': "Resource focused. Emphasize design utility and versatility.",
        'keywords': "Design and graphic resource terms, styles and creative applications.",
        'description': "Explain how designers can use the asset.",
    },
}

PROMPT_STYLES = {
    'midjourney': "Optimize for Midjourney v6: natural language scene, style references, "
                  "lighting, optional trailing parameters such as --ar and --stylize.",
    'dalle': "Optimize for DALL-E 3: vivid natural language, art medium, mood, framing. "
             "No technical parameters.",
    'stable-diffusion': "Optimize for Stable Diffusion: comma-separated tags, quality boosters, "
                        "(emphasis) for key elements, and a negative prompt.",
    'general': "Universal prompt: subject, style and medium, lighting and palette, "
               "composition and perspective, mood.",
}

DETAIL_LEVELS = {
    'basic': "Keep it concise, around 50-100 words, essentials only.",
    'detailed': "Write 150-250 words covering style, lighting, composition and mood.",
    'expert': "Write 300+ words including camera angles, colour grading, artistic influences "
              "and a detailed composition analysis.",
}

PROMPT_FOCUSES = {
    'general': "Describe the image as a whole.",
    'composition': "Concentrate on layout, framing, perspective, subject placement and depth.",
    'color': "Concentrate on the palette, colour harmony, saturation, contrast and colour grading.",
    'mood': "Concentrate on atmosphere, emotion, lighting character and storytelling.",
}

REVIEW_VARIANT = 'review'


def extract_json(response_text: str) -> Any:
    """Parse a model reply that may wrap its JSON in markdown or prose"""
    if not response_text or not response_text.strip():
        raise InferenceError("Empty response from model")

    try:
        return json.loads(response_text)
    except json.JSONDecodeError:
        pass

    # fenced JSON (```json or ```)
    m = re.search(r"```(?:json)?\s*(\{.*\}|\[.*\])\s*```",
                  response_text, re.DOTALL | re.IGNORECASE)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass

    # first inline JSON object/array
    m = re.search(r"(\{.*\}|\[.*\])", response_text, re.DOTALL)
    if m:
        try:
            return json.loads(m.group(1))
        except json.JSONDecodeError:
            pass

    raise InferenceError(f"Failed to parse model response: {response_text[:300]}")


def _clean_keywords(raw) -> List[str]:
    if isinstance(raw, str):
        raw = raw.split(',')
    keywords = []
    for k in raw or []:
        k = str(k).strip()
        if k and k.lower() not in (x.lower() for x in keywords):
            keywords.append(k)
    return keywords


def _image_message(text: str, image_url: str) -> Dict[str, Any]:
    return {
        'role': 'user',
        'content': [
            {'type': 'text', 'text': text},
            {'type': 'image_url', 'image_url': {'url': image_url}},
        ],
    }


class Tool(ABC):
    """One pipeline's request/response contract"""

    name = ''
    default_selectors: Sequence[str] = ()

    @abstractmethod
    def allowed_selectors(self) -> Sequence[str]:
        ...

    def validate_selectors(self, selectors: Sequence[str]) -> List[str]:
        selectors = list(selectors or self.default_selectors)
        if not selectors:
            raise ValidationError("Select at least one option before queueing files")
        allowed = self.allowed_selectors()
        unknown = [s for s in selectors if s not in allowed]
        if unknown:
            raise ValidationError(f"Unknown selection(s): {', '.join(unknown)}")
        return selectors

    def item_cost(self, selectors: Sequence[str]) -> int:
        return 1

    @abstractmethod
    def build_messages(self, image_url: str, selectors: Sequence[str],
                       params: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def parse_response(self, text: str, selectors: Sequence[str]) -> ResultPayload:
        ...


class MetadataGenerationTool(Tool):
    """Titles, descriptions and keywords per marketplace"""

    name = 'metadata'

    def allowed_selectors(self):
        return MARKETPLACES

    def item_cost(self, selectors):
        # one credit per marketplace per file
        return len(selectors)

    def build_messages(self, image_url, selectors, params):
        keyword_count = max(1, min(50, int(params.get('keyword_count', 30) or 30)))
        title_max = max(10, min(200, int(params.get('title_max_chars', 200) or 200)))
        description_max = max(50, min(500, int(params.get('description_max_chars', 500) or 500)))

        guidance = []
        for marketplace in selectors:
            g = MARKETPLACE_GUIDELINES[marketplace]
            guidance.append(
                f"{marketplace}:\n- Title style: {g['title']}\n"
                f"- Keyword focus: {g['keywords']}\n- Description: {g['description']}")

        system = (
            "You are a stock photography metadata specialist for Adobe Stock, Shutterstock "
            "and Freepik. Analyze the image and produce metadata that maximizes discoverability.\n"
            f"Titles: 1-{title_max} characters, descriptive, no filler.\n"
            f"Descriptions: up to {description_max} characters.\n"
            f"Keywords: exactly {keyword_count}, most relevant first, no duplicates.\n"
            "Never leave title, description or keywords empty.")
        training = params.get('training_context')
        if training:
            system += f"\nUser preferences: {json.dumps(training, ensure_ascii=False)}"

        user = (
            "Generate metadata for these marketplaces:\n\n" + "\n\n".join(guidance) +
            "\n\nRespond strictly with JSON only:\n"
            '{"results": [{"marketplace": "...", "title": "...", '
            '"description": "...", "keywords": ["..."]}]}')

        return [{'role': 'system', 'content': system}, _image_message(user, image_url)]

    def parse_response(self, text, selectors):
        data = extract_json(text)
        rows = data.get('results') if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise InferenceError("Model response has no results list")

        by_name = {}
        for row in rows:
            if not isinstance(row, dict):
                continue
            marketplace = row.get('marketplace')
            if marketplace in selectors and marketplace not in by_name:
                by_name[marketplace] = Variant(
                    name=marketplace,
                    title=(row.get('title') or '').strip(),
                    description=(row.get('description') or '').strip(),
                    keywords=_clean_keywords(row.get('keywords')),
                )

        missing = [m for m in selectors if m not in by_name]
        if missing:
            raise InferenceError(f"No metadata returned for: {', '.join(missing)}")
        return ResultPayload(variants=[by_name[m] for m in selectors])


class ImageToPromptTool(Tool):
    """Text-to-image prompts, one per selected focus"""

    name = 'prompt'
    default_selectors = ('general',)

    def allowed_selectors(self):
        return tuple(PROMPT_FOCUSES)

    def build_messages(self, image_url, selectors, params):
        style = params.get('style', 'general')
        detail = params.get('detail_level', 'detailed')
        if style not in PROMPT_STYLES:
            raise ValidationError(f"Unknown prompt style: {style}")
        if detail not in DETAIL_LEVELS:
            raise ValidationError(f"Unknown detail level: {detail}")

        system = ("You are an expert at reverse-engineering images into prompts for AI image "
                  f"generators.\n{PROMPT_STYLES[style]}\n{DETAIL_LEVELS[detail]}")
        training = params.get('training_context')
        if training:
            system += f"\nFollow these learned preferences: {json.dumps(training, ensure_ascii=False)}"

        focus_lines = "\n".join(f"- {f}: {PROMPT_FOCUSES[f]}" for f in selectors)
        user = (
            "Write one prompt per focus below.\n" + focus_lines +
            "\n\nRespond strictly with JSON only:\n"
            '{"variants": [{"focus": "...", "prompt": "...", "negativePrompt": "..."}], '
            '"suggestedAspectRatio": "16:9", "dominantColors": ["..."], "artStyle": "..."}')
        return [{'role': 'system', 'content': system}, _image_message(user, image_url)]

    def parse_response(self, text, selectors):
        data = extract_json(text)
        if not isinstance(data, dict):
            raise InferenceError("Model response is not a JSON object")

        shared = {
            'suggested_aspect_ratio': data.get('suggestedAspectRatio'),
            'dominant_colors': data.get('dominantColors') or [],
            'art_style': data.get('artStyle'),
        }
        rows = data.get('variants')
        if not rows and data.get('prompt'):
            # single prompt reply; use it for the first focus
            rows = [{'focus': selectors[0], 'prompt': data.get('prompt'),
                     'negativePrompt': data.get('negativePrompt')}]

        by_focus = {}
        for row in rows or []:
            if isinstance(row, dict) and row.get('focus') in selectors and row.get('prompt'):
                by_focus.setdefault(row['focus'], Variant(
                    name=row['focus'],
                    prompt=row['prompt'].strip(),
                    negative_prompt=(row.get('negativePrompt') or None),
                    extra=dict(shared),
                ))

        missing = [f for f in selectors if f not in by_focus]
        if missing:
            raise InferenceError(f"No prompt returned for: {', '.join(missing)}")
        return ResultPayload(variants=[by_focus[f] for f in selectors], details=shared)


class FileReviewTool(Tool):
    """Marketplace acceptance review with a pass/warning/fail verdict"""

    name = 'review'
    default_selectors = (REVIEW_VARIANT,)

    def allowed_selectors(self):
        return (REVIEW_VARIANT,)

    def build_messages(self, image_url, selectors, params):
        marketplaces = params.get('marketplaces') or list(MARKETPLACES)
        system = (
            "You are a senior stock-media reviewer. Inspect the file for technical quality "
            "(focus, noise, exposure, artifacts), legal risk (logos, trademarks, recognizable "
            "people or property without releases) and commercial value. Verdict guide: "
            "pass = ready to submit, warning = fixable issues, fail = will be rejected.")
        user = (
            f"Review this file for submission to: {', '.join(marketplaces)}.\n"
            "Respond strictly with JSON only:\n"
            '{"overallScore": 0-100, "verdict": "pass|warning|fail", '
            '"issues": [{"code": "...", "severity": "low|medium|high", "category": "...", '
            '"message": "...", "details": "..."}], "suggestions": ["..."], '
            '"marketplaceNotes": {"Adobe Stock": "..."}}')
        return [{'role': 'system', 'content': system}, _image_message(user, image_url)]

    def parse_response(self, text, selectors):
        data = extract_json(text)
        if not isinstance(data, dict):
            raise InferenceError("Model response is not a JSON object")
        try:
            verdict = Verdict(str(data.get('verdict', '')).lower())
        except ValueError:
            raise InferenceError(f"Invalid review verdict: {data.get('verdict')!r}")

        try:
            score = int(round(float(data.get('overallScore', 0))))
        except (TypeError, ValueError):
            score = 0
        score = max(0, min(100, score))

        issues = [i for i in data.get('issues') or [] if isinstance(i, dict)]
        suggestions = [str(s) for s in data.get('suggestions') or []]
        details = {
            'issues': issues,
            'suggestions': suggestions,
            'marketplace_notes': data.get('marketplaceNotes') or {},
        }
        variant = Variant(
            name=REVIEW_VARIANT,
            description='; '.join(i.get('message', '') for i in issues if i.get('message')) or None,
            extra={'verdict': verdict.value, 'overall_score': score},
        )
        return ResultPayload(variants=[variant], verdict=verdict,
                             overall_score=score, details=details)


TOOLS = {
    MetadataGenerationTool.name: MetadataGenerationTool,
    ImageToPromptTool.name: ImageToPromptTool,
    FileReviewTool.name: FileReviewTool,
}


def get_tool(name: str) -> Tool:
    try:
        return TOOLS[name]()
    except KeyError:
        raise ValidationError(f"Unknown tool: {name}")
