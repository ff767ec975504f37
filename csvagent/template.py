from typing import Any, Callable, MutableMapping

from jinja2 import BaseLoader, ChoiceLoader, Environment, PackageLoader, PrefixLoader, StrictUndefined, Template

LANG_ALIASES = {
    'cn': 'zh',
}


class TemplateLoader(BaseLoader):
    """Loads ``templates/<lang>/<name>`` from a package, addressed as ``<lang>/<name>``."""

    def __init__(self, package_name: str, default_lang: str = 'en', langs: tuple[str, ...] = ('en', 'zh')):
        self.default_lang = LANG_ALIASES.get(default_lang, default_lang)
        self.loader_map: dict[str, list[BaseLoader]] = {
            lang: [PackageLoader(package_name, package_path=f"templates/{lang}")] for lang in langs
        }
        for alias, lang in LANG_ALIASES.items():
            if lang in self.loader_map:
                self.loader_map[alias] = self.loader_map[lang]
        self._loader = self._build_jinja_loader(self.loader_map)

    @staticmethod
    def _build_jinja_loader(loader_map: dict[str, list[BaseLoader]]) -> PrefixLoader:
        return PrefixLoader({key: ChoiceLoader(loaders) for key, loaders in loader_map.items()})

    def get_source(self, environment: Environment, template: str) -> tuple[str, str | None, Callable[[], bool] | None]:
        return self._loader.get_source(environment, template)

    def list_templates(self) -> list[str]:
        return self._loader.list_templates()

    def load(self, environment: Environment, name: str, globals: MutableMapping[str, Any] | None = None) -> Template:
        return self._loader.load(environment, name, globals)

    def add_loaders(self, lang: str, *loaders: BaseLoader) -> None:
        """Put ``loaders`` in front of the package templates for ``lang``."""
        lang = LANG_ALIASES.get(lang, lang)
        self.loader_map[lang] = list(loaders) + self.loader_map.get(lang, [])
        self._loader = self._build_jinja_loader(self.loader_map)


class TemplateEnvironment(Environment):
    def __init__(self, package_name: str, default_lang: str | None = None, **options: Any):
        self.loader = TemplateLoader(package_name, default_lang or 'en')
        options.setdefault('trim_blocks', True)
        options.setdefault('lstrip_blocks', True)
        options.setdefault('undefined', StrictUndefined)
        super().__init__(loader=self.loader, **options)

    def add_loaders(self, lang: str, *loaders: BaseLoader) -> None:
        self.loader.add_loaders(lang, *loaders)

    def load_template(self, name: str, lang: str | None = None, globals: MutableMapping[str, Any] | None = None) -> Template:
        """Load ``name`` in ``lang``, falling back to the default language, then English."""
        candidate_langs: list[str] = []
        for option in (lang, self.loader.default_lang, 'en', *self.loader.loader_map):
            option = LANG_ALIASES.get(option, option) if option else option
            if option and option not in candidate_langs:
                candidate_langs.append(option)
        return self.select_template(names=[f"{l}/{name}" for l in candidate_langs], globals=globals)
