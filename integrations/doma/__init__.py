from integrations.doma.resolver import DomaResolver, parse_token_uri

__all__ = ["DomaResolver", "parse_token_uri"]
