import logging
from types import SimpleNamespace

import pytest
import torch

from rnnfactory import ConfigurationError, Dictionary, Hyperparameters, Model, make_model
from rnnfactory.registry import LSTM_LAYER_NAMES, SRN_LAYER_NAMES


def _params(name: str, n_hidden: int = 8, non_linearity=None) -> Hyperparameters:
    return Hyperparameters(name=name, n_hidden=n_hidden, non_linearity=non_linearity)


def test_srn_dense_model(flat_dictionary):
    model, layers = make_model(_params("srn_sm", non_linearity="relu"), flat_dictionary)

    assert model.encoder is not None
    assert model.decoder is not None
    assert model.decoder_with_loss is None
    assert set(layers) == {"embed", "project"}
    assert model.internal_layers is layers


def test_lstm_hierarchical_model(dictionary):
    model, layers = make_model(_params("lstm_hsm"), dictionary)

    assert model.encoder is not None
    assert model.decoder is None
    assert model.decoder_with_loss is not None
    assert list(layers) == list(LSTM_LAYER_NAMES)


@pytest.mark.parametrize("name", ["srn_sm", "srn_hsm", "lstm_sm", "lstm_hsm"])
def test_exactly_one_head(name, dictionary):
    model, layers = make_model(_params(name, non_linearity="sigmoid"), dictionary)

    assert (model.decoder is None) != (model.decoder_with_loss is None)
    expected = SRN_LAYER_NAMES if name.startswith("srn") else LSTM_LAYER_NAMES
    assert tuple(layers) == expected


def test_n_classes_defaults_to_dictionary_length(flat_dictionary):
    model, layers = make_model(_params("lstm_sm"), flat_dictionary)

    assert model.encoder.n_classes == 5
    assert layers.module("embed1").num_embeddings == 5


def test_any_object_with_index_to_freq_is_a_dictionary():
    vocab = SimpleNamespace(index_to_freq=torch.tensor([9, 7, 3]), mapping=[[0, 0], [0, 1], [1, 0]])
    model, layers = make_model(_params("srn_hsm", non_linearity="relu"), vocab)

    assert layers.module("embed").num_embeddings == 3
    assert model.decoder_with_loss.n_clusters == 2
    with pytest.raises(ConfigurationError):
        make_model(_params("lstm_sm"), SimpleNamespace(mapping=None))


def test_explicit_n_classes_overrides_dictionary():
    big = Dictionary(index_to_freq=torch.ones(5000))
    model, layers = make_model(_params("srn_sm", non_linearity="relu"), big, n_classes=200)

    assert layers.module("embed").num_embeddings == 200
    log_probs = model.decoder(torch.randn(2, 8))
    assert log_probs.shape == (2, 200)


def test_accepts_plain_mapping(flat_dictionary):
    model, layers = make_model({"name": "srn_sm", "n_hidden": 4, "non_linearity": "sigmoid"}, flat_dictionary)

    assert model.encoder.n_hidden == 4


def test_srn_shape_law(flat_dictionary):
    for non_linearity in ("relu", "sigmoid"):
        model, _ = make_model(_params("srn_sm", n_hidden=6, non_linearity=non_linearity), flat_dictionary)
        tokens = torch.tensor([0, 1, 4])
        hidden = model.encoder(tokens, torch.zeros(3, 6))
        assert hidden.shape == (3, 6)
        assert model.decoder(hidden).shape == (3, 5)


def test_lstm_shape_law_and_loss(dictionary):
    model, _ = make_model(_params("lstm_hsm", n_hidden=6), dictionary)
    tokens = torch.tensor([0, 3, 6, 2])
    state = (torch.randn(4, 6), torch.randn(4, 6))

    h_new, c_new = model.encoder(tokens, state)
    loss = model.decoder_with_loss(h_new, torch.tensor([1, 2, 3, 4]))

    assert h_new.shape == (4, 6)
    assert c_new.shape == (4, 6)
    assert loss.dim() == 0


def test_gate_parameters_are_independent(dictionary):
    model, layers = make_model(_params("lstm_sm", n_hidden=6), dictionary)
    tokens = torch.tensor([1, 5])
    state = model.encoder.initial_state(2)
    state = (torch.randn_like(state[0]), state[1])

    _, before = model.encoder.forward_debug(tokens, state)
    with torch.no_grad():
        layers.module("embed1").weight.add_(1.0)
        layers.module("project1").weight.add_(1.0)
    _, after = model.encoder.forward_debug(tokens, state)

    probes_before = layers.select(before)
    probes_after = layers.select(after)
    assert not torch.allclose(probes_before["embed1"], probes_after["embed1"])
    assert not torch.allclose(probes_before["project1"], probes_after["project1"])
    for name in ("embed2", "project2", "embed3", "project3", "embed4", "project4"):
        assert torch.equal(probes_before[name], probes_after[name])
    assert torch.equal(before["forget_sum"], after["forget_sum"])


def test_models_do_not_share_parameters(flat_dictionary):
    first, _ = make_model(_params("lstm_sm"), flat_dictionary)
    second, _ = make_model(_params("lstm_sm"), flat_dictionary)

    first_ids = {id(p) for p in first.parameters()}
    assert first_ids.isdisjoint(id(p) for p in second.parameters())
    assert first.num_parameters() == second.num_parameters() == 4 * 5 * 8 + 4 * 8 * 8 + 8 * 5


def test_invalid_non_linearity_builds_nothing(flat_dictionary, monkeypatch):
    import rnnfactory.factory as factory

    def fail(*args, **kwargs):
        raise AssertionError("cell builder should not run")

    monkeypatch.setattr(factory, "build_srn_cell", fail)
    with pytest.raises(ConfigurationError):
        make_model(_params("srn_sm", non_linearity="tanh_typo"), flat_dictionary)


@pytest.mark.parametrize("name", ["srn", "lstm", "srn_softmax", "lstm_hs"])
def test_missing_head_token_fails(name, dictionary):
    with pytest.raises(ConfigurationError):
        make_model(_params(name, non_linearity="relu"), dictionary)


def test_unknown_cell_family_fails(dictionary):
    with pytest.raises(ConfigurationError):
        make_model(_params("gru_sm"), dictionary)


def test_hierarchical_head_requires_mapping(flat_dictionary, monkeypatch):
    import rnnfactory.factory as factory

    monkeypatch.setattr(factory, "build_lstm_cell", lambda *a: pytest.fail("cell built"))
    with pytest.raises(ConfigurationError, match="mapping"):
        make_model(_params("lstm_hsm"), flat_dictionary)


def test_mapping_must_cover_overridden_classes(dictionary):
    with pytest.raises(ConfigurationError):
        make_model(_params("lstm_hsm"), dictionary, n_classes=3)


@pytest.mark.parametrize("n_classes", [0, -1])
def test_n_classes_must_be_positive(n_classes, flat_dictionary):
    with pytest.raises(ConfigurationError):
        make_model(_params("srn_sm", non_linearity="relu"), flat_dictionary, n_classes=n_classes)


def test_empty_dictionary_rejected():
    with pytest.raises(ConfigurationError):
        make_model(_params("lstm_sm"), Dictionary(index_to_freq=[]))


def test_model_requires_exactly_one_head(flat_dictionary):
    model, layers = make_model(_params("srn_sm", non_linearity="relu"), flat_dictionary)
    with pytest.raises(ValueError):
        Model(encoder=model.encoder, decoder=None, decoder_with_loss=None, internal_layers=layers)


def test_registry_is_read_only(flat_dictionary):
    _, layers = make_model(_params("srn_sm", non_linearity="relu"), flat_dictionary)

    with pytest.raises(TypeError):
        layers["embed"] = layers["project"]
    with pytest.raises(TypeError):
        layers._handles["extra"] = layers["embed"]


def test_logs_built_model(flat_dictionary, caplog):
    with caplog.at_level(logging.INFO, logger="rnnfactory.factory"):
        make_model(_params("lstm_sm"), flat_dictionary)

    assert "LSTM model 'lstm_sm'" in caplog.text
