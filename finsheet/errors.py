from typing import Optional


class PipelineError(RuntimeError):
    """Erreur de base du pipeline PDF → tableau."""


class ConfigurationError(PipelineError):
    """Configuration invalide ou requête de lot mal formée (fatal, avant tout traitement)."""


class PerFileError(PipelineError):
    """Échec isolé à un seul fichier : le lot continue avec les fichiers suivants."""


class NotFoundError(PerFileError):
    """Le fichier demandé n'existe pas côté source."""


class TransferError(PerFileError):
    """Le téléchargement a échoué ou a renvoyé un contenu vide."""


class UploadError(PerFileError):
    """Le service de parsing a refusé l'envoi du fichier."""

    def __init__(self, status_code: int, body: str, file_name: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        self.file_name = file_name
        super().__init__(f"Échec de l'envoi au service de parsing: {status_code}\nDétails: {body}")


class ParseError(PerFileError):
    """Le job de parsing n'a pas produit de document exploitable."""


class InterpretationError(PerFileError):
    """Erreur de l'étape d'interprétation (appel au modèle ou sortie invalide)."""


class EmptyResponseError(InterpretationError):
    """Le modèle n'a renvoyé aucun texte."""


class MalformedOutputError(InterpretationError):
    """La sortie du modèle n'est pas du JSON valide."""


class UnexpectedShapeError(InterpretationError):
    """La sortie du modèle est du JSON valide mais pas un tableau d'objets."""


class PersistError(PipelineError):
    """L'écriture finale dans le tableau cible a échoué."""
